"""
Spike-event detection for the spike scan.

Looks for temporary explosive moves above a stable base price:
1. Base price per bar = rolling median close over the bar and the 60 before
   it, ignoring closes above twice the rough median
2. A zone opens when the close is at least half the threshold above the base
3. The zone base is frozen at entry; the zone runs while the close stays at
   least a quarter of the threshold above it
4. Zones lasting the minimum duration with a peak at the full threshold
   become events
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from data.models import PriceBar
from utils.helpers import median

BASE_WINDOW = 60
OUTLIER_MULTIPLE = 2.0
STABILITY_BONUS = 1.2
MIN_HISTORY_BARS = 60
MIN_WINDOW_BARS = 30


@dataclass
class SpikeEvent:
    """One accepted spike zone."""

    start_date: date
    peak_date: date
    end_date: date
    base_price: float
    peak_price: float
    spike_pct: float
    duration_days: int
    is_valid: bool = True

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("start_date", "peak_date", "end_date"):
            data[key] = getattr(self, key).isoformat()
        return data


@dataclass
class SpikeAnalysis:
    """Result of ``analyze_spike_events``."""

    events: List[SpikeEvent] = field(default_factory=list)
    spike_score: float = 0.0
    highest_spike_pct: float = 0.0
    highest_spike_date: Optional[date] = None
    base_price_median: float = 0.0
    price_change_12m: Optional[float] = None
    base_decline_pct: Optional[float] = None


def _robust_median(window: np.ndarray) -> float:
    rough = float(np.median(window))
    kept = window[window <= rough * OUTLIER_MULTIPLE]
    return float(np.median(kept)) if kept.size else rough


def rolling_base_prices(closes: Sequence[float], window: int = BASE_WINDOW) -> np.ndarray:
    """Spike-resistant base price for every bar."""
    series = pd.Series(closes, dtype=float)
    return series.rolling(window=window + 1, min_periods=1).apply(_robust_median, raw=True).to_numpy()


def _months_before(as_of: date, months: int) -> date:
    return (pd.Timestamp(as_of) - pd.DateOffset(months=months)).date()


def analyze_spike_events(
    history: Sequence[PriceBar],
    spike_threshold_pct: float = 75,
    min_duration_days: int = 4,
    lookback_months: int = 24,
    as_of: Optional[date] = None,
) -> SpikeAnalysis:
    """
    Detect spike events in the last ``lookback_months`` of history.

    Args:
        history: Daily bars in date order
        spike_threshold_pct: Minimum peak above the frozen base, in percent
        min_duration_days: Minimum number of bars in the zone
        lookback_months: Window analysed, counted back from ``as_of``
        as_of: Reference date; defaults to the last bar's date

    Returns:
        SpikeAnalysis. Empty when there are fewer than 60 bars overall or
        fewer than 30 inside the window.
    """
    if len(history) < MIN_HISTORY_BARS:
        return SpikeAnalysis()

    as_of = as_of or history[-1].date
    cutoff = _months_before(as_of, lookback_months)
    recent = [bar for bar in history if bar.date >= cutoff]
    if len(recent) < MIN_WINDOW_BARS:
        return SpikeAnalysis()

    closes = np.array([bar.close for bar in recent], dtype=float)
    dates = [bar.date for bar in recent]
    bases = rolling_base_prices(closes)
    n = len(recent)

    entry_pct = spike_threshold_pct * 0.5
    hold_pct = entry_pct * 0.5
    events: List[SpikeEvent] = []

    i = 0
    while i < n:
        base = bases[i]
        if base <= 0 or closes[i] <= base or (closes[i] - base) / base * 100 < entry_pct:
            i += 1
            continue

        start = i
        zone_base = float(bases[max(0, start - 1)])
        if zone_base <= 0:
            i += 1
            continue
        peak_price = float(closes[i])
        peak_date = dates[i]

        j = i + 1
        while j < n:
            price = float(closes[j])
            if price > peak_price:
                peak_price = price
                peak_date = dates[j]
            if (price - zone_base) / zone_base * 100 >= hold_pct:
                j += 1
            else:
                break

        end = j - 1
        duration = end - start + 1
        spike_pct = (peak_price - zone_base) / zone_base * 100

        if duration >= min_duration_days and spike_pct >= spike_threshold_pct:
            overlaps = any(
                dates[start] <= e.end_date and dates[end] >= e.start_date for e in events
            )
            if not overlaps:
                events.append(SpikeEvent(
                    start_date=dates[start],
                    peak_date=peak_date,
                    end_date=dates[end],
                    base_price=zone_base,
                    peak_price=peak_price,
                    spike_pct=spike_pct,
                    duration_days=duration,
                ))

        i = end + 1

    score = sum((e.spike_pct / 100) * (e.duration_days / min_duration_days) for e in events)

    analysis = SpikeAnalysis(events=events, base_price_median=median(bases))
    for event in events:
        if event.spike_pct > analysis.highest_spike_pct:
            analysis.highest_spike_pct = event.spike_pct
            analysis.highest_spike_date = event.peak_date

    analysis.price_change_12m = _twelve_month_change(recent, events, as_of)
    analysis.base_decline_pct = _base_trend_pct(bases)

    if analysis.base_decline_pct is not None and analysis.base_decline_pct > 0:
        score *= STABILITY_BONUS
    analysis.spike_score = round(score, 2)
    return analysis


def _twelve_month_change(
    recent: Sequence[PriceBar],
    events: Sequence[SpikeEvent],
    as_of: date,
) -> Optional[float]:
    """
    Percent change from the first close on or after the 12-month anchor.

    When the anchor falls inside a spike, the median close of the month
    before the anchor is used instead.
    """
    anchor = _months_before(as_of, 12)
    anchor_price = next((bar.close for bar in recent if bar.date >= anchor), None)
    if anchor_price is None or anchor_price <= 0:
        return None

    current = recent[-1].close
    if any(e.start_date <= anchor <= e.end_date for e in events):
        pre_spike_start = _months_before(anchor, 1)
        pre_spike = [bar.close for bar in recent if pre_spike_start <= bar.date < anchor]
        if not pre_spike:
            return None
        baseline = median(pre_spike)
        return (current - baseline) / baseline * 100 if baseline > 0 else None

    return (current - anchor_price) / anchor_price * 100


def _base_trend_pct(bases: np.ndarray) -> Optional[float]:
    """Change between first- and last-quarter median base price, in percent."""
    quarter = len(bases) // 4
    if quarter <= 5:
        return None
    first = median(bases[:quarter])
    last = median(bases[-quarter:])
    if first <= 0:
        return None
    return (last - first) / first * 100
