"""
Growth-event detection for the ATH-recovery scan.

A growth event is a recovery from a trough to a later peak of at least the
configured threshold. Candidate troughs are:
- the first bar
- the global minimum low
- local-minimum lows within a symmetric window
- bars whose low falls below half the running high since the last such drop

Scoring uses triangular numbers: 1 event = 1, 2 events = 3, n = n(n+1)/2.
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from data.models import PriceBar
from utils.helpers import median

TROUGH_WINDOW = 7
DROP_FRACTION = 0.5  # low below half the running high starts a new trough
BREAK_FRACTION = 0.5  # close below half the trough ends the forward scan
OVERLAP_TAIL_BARS = 5
MIN_BARS = 10


@dataclass
class GrowthEvent:
    """One trough-to-peak recovery."""

    start_date: date
    end_date: date
    start_price: float
    peak_price: float
    growth_pct: float
    consecutive_days_above: int
    is_valid: bool

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["start_date"] = self.start_date.isoformat()
        data["end_date"] = self.end_date.isoformat()
        return data


@dataclass
class GrowthAnalysis:
    """Result of ``analyze_growth_events``."""

    events: List[GrowthEvent] = field(default_factory=list)
    score: int = 0
    highest_growth_pct: float = 0.0
    highest_growth_date: Optional[date] = None


@dataclass
class PricePoint:
    price: float
    date: date


@dataclass
class StableSpikeAnalysis:
    """Stable base with upward spikes over a recent window."""

    is_stable_with_spikes: bool = False
    median_price: float = 0.0
    period_low: float = 0.0
    max_decline_from_median: float = 0.0
    max_spike_above_median: float = 0.0
    spike_count: int = 0
    spike_dates: List[date] = field(default_factory=list)


def triangular_score(event_count: int) -> int:
    return event_count * (event_count + 1) // 2


def find_troughs(lows: np.ndarray, highs: np.ndarray, window: int = TROUGH_WINDOW) -> List[int]:
    """Indices of candidate troughs, ascending."""
    n = len(lows)
    troughs = {0}

    positive = np.where(lows > 0, lows, np.inf)
    if np.isfinite(positive).any():
        troughs.add(int(np.argmin(positive)))

    for i in range(window, n - window):
        current = lows[i]
        if current <= 0:
            continue
        neighbours = np.concatenate([lows[i - window : i], lows[i + 1 : i + window + 1]])
        if not np.any((neighbours > 0) & (neighbours < current)):
            troughs.add(i)

    running_high = highs[0]
    for i in range(1, n):
        if highs[i] > running_high:
            running_high = highs[i]
        if 0 < lows[i] < running_high * DROP_FRACTION:
            troughs.add(i)
            running_high = highs[i]

    return sorted(troughs)


def _longest_run(mask: np.ndarray) -> int:
    best = run = 0
    for flag in mask:
        run = run + 1 if flag else 0
        best = max(best, run)
    return best


def analyze_growth_events(
    history: Sequence[PriceBar],
    growth_threshold: float = 200,
    min_consecutive_days: int = 5,
    lookback_years: int = 3,
) -> GrowthAnalysis:
    """
    Find non-overlapping trough-to-peak recoveries of at least ``growth_threshold`` %.

    The whole history is scanned; ``lookback_years`` is informational.

    A trough's recovery is accepted once the highs stayed at or above the
    target on at least ``min(min_consecutive_days, 2)`` days (counted
    cumulatively, not necessarily in a row). Troughs are processed in date
    order and the first accepted event wins over later overlapping ones.

    Args:
        history: Daily bars in date order
        growth_threshold: Minimum gain in percent (200 = price tripled)
        min_consecutive_days: Requested days above target
        lookback_years: Informational only

    Returns:
        GrowthAnalysis with events, triangular score and the largest event
    """
    n = len(history)
    if n < MIN_BARS:
        return GrowthAnalysis()

    lows = np.array([bar.low for bar in history], dtype=float)
    highs = np.array([bar.high for bar in history], dtype=float)
    closes = np.array([bar.close for bar in history], dtype=float)
    dates = [bar.date for bar in history]

    required_days = min(min_consecutive_days, 2)
    events: List[GrowthEvent] = []
    analysis = GrowthAnalysis()

    for trough_idx in find_troughs(lows, highs):
        trough_price = lows[trough_idx]
        if trough_price <= 0:
            continue
        target = trough_price * (1 + growth_threshold / 100)

        # The bar that closes below half the trough is still scanned, then the cycle ends
        following = closes[trough_idx + 1 :]
        broken = np.flatnonzero(following < trough_price * BREAK_FRACTION)
        end = trough_idx + 2 + int(broken[0]) if broken.size else n
        segment = highs[trough_idx + 1 : end]
        if segment.size == 0:
            continue

        peak_offset = int(np.argmax(segment))
        peak_price = float(segment[peak_offset])
        if peak_price <= trough_price:
            continue
        peak_idx = trough_idx + 1 + peak_offset

        above = segment >= target
        days_above = int(above.sum())
        longest = _longest_run(above)
        growth_pct = (peak_price - trough_price) / trough_price * 100

        if days_above == 0 or growth_pct < growth_threshold or days_above < required_days:
            continue

        start = dates[trough_idx]
        tail = dates[min(peak_idx + OVERLAP_TAIL_BARS, n - 1)]
        overlaps = any(
            (e.start_date <= start <= e.end_date)
            or (e.start_date <= tail <= e.end_date)
            or (start <= e.start_date and tail >= e.end_date)
            for e in events
        )
        if overlaps:
            continue

        events.append(GrowthEvent(
            start_date=start,
            end_date=dates[peak_idx],
            start_price=float(trough_price),
            peak_price=peak_price,
            growth_pct=growth_pct,
            consecutive_days_above=longest,
            is_valid=longest >= required_days,
        ))

        if growth_pct > analysis.highest_growth_pct:
            analysis.highest_growth_pct = growth_pct
            analysis.highest_growth_date = dates[peak_idx]

    analysis.events = events
    analysis.score = triangular_score(len(events))
    return analysis


# =============================================================================
# Price levels
# =============================================================================

def calculate_ath(history: Sequence[PriceBar]) -> Optional[PricePoint]:
    """Highest high in the history."""
    best: Optional[PricePoint] = None
    for bar in history:
        if bar.high > 0 and (best is None or bar.high > best.price):
            best = PricePoint(bar.high, bar.date)
    return best


def _years_before(as_of: date, years: float) -> date:
    return (pd.Timestamp(as_of) - pd.DateOffset(months=int(round(years * 12)))).date()


def calculate_period_low(
    history: Sequence[PriceBar],
    years: Optional[float] = None,
    as_of: Optional[date] = None,
) -> Optional[PricePoint]:
    """
    Lowest positive low, optionally limited to the last ``years`` years.

    ``as_of`` defaults to the date of the last bar.
    """
    if not history:
        return None

    cutoff = None
    if years is not None:
        cutoff = _years_before(as_of or history[-1].date, years)

    best: Optional[PricePoint] = None
    for bar in history:
        if cutoff is not None and bar.date < cutoff:
            continue
        if bar.low > 0 and (best is None or bar.low < best.price):
            best = PricePoint(bar.low, bar.date)
    return best


def calculate_five_year_low(history: Sequence[PriceBar], as_of: Optional[date] = None) -> Optional[PricePoint]:
    return calculate_period_low(history, 5, as_of)


def calculate_three_year_low(history: Sequence[PriceBar], as_of: Optional[date] = None) -> Optional[PricePoint]:
    return calculate_period_low(history, 3, as_of)


def analyze_stable_with_spikes(
    history: Sequence[PriceBar],
    max_decline_pct: float = 10,
    min_spike_pct: float = 100,
    lookback_months: int = 12,
    as_of: Optional[date] = None,
) -> StableSpikeAnalysis:
    """
    Check for a stable base (median close) with at least one large spike above it.

    Stable means the lowest low stayed within ``max_decline_pct`` of the
    median; a spike is a high at least ``min_spike_pct`` above the median.
    """
    result = StableSpikeAnalysis()
    if len(history) < 20:
        return result

    as_of = as_of or history[-1].date
    cutoff = (pd.Timestamp(as_of) - pd.DateOffset(months=lookback_months)).date()
    recent = [bar for bar in history if bar.date >= cutoff]
    if len(recent) < 20:
        return result

    closes = [bar.close for bar in recent if bar.close > 0]
    if not closes:
        return result
    base = median(closes)
    result.median_price = base

    lows = [bar.low for bar in recent if bar.low > 0]
    period_low = min(lows) if lows else base
    max_high = max(bar.high for bar in recent)
    spike_dates = [bar.date for bar in recent if (bar.high - base) / base * 100 >= min_spike_pct]

    result.period_low = period_low
    result.max_decline_from_median = (base - period_low) / base * 100
    result.max_spike_above_median = (max_high - base) / base * 100
    result.spike_count = len(spike_dates)
    result.spike_dates = spike_dates[:10]
    result.is_stable_with_spikes = (
        result.max_decline_from_median <= max_decline_pct
        and result.max_spike_above_median >= min_spike_pct
    )
    return result
