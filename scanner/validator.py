"""
Sanity checks on prices and price histories.

Validation returns errors (the data is unusable) and warnings (usable but
worth a human look). Split detection flags consecutive bars whose gap looks
like a share split rather than a real move.
"""

from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Sequence

import pandas as pd

from data.models import PriceBar

EXTREME_DAILY_MOVE_PCT = 1000
MIN_EXPECTED_POINTS = 500


@dataclass
class ValidationResult:
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


@dataclass
class StockSplit:
    """Suspected split. Positive ratio = forward split, negative = reverse split."""

    date: date
    ratio: int


@dataclass
class CrossValidation:
    is_consistent: bool
    confidence: int
    average_price: Optional[float]


def validate_price_history(history: Sequence[PriceBar]) -> ValidationResult:
    """
    Check a price history.

    Errors: empty history, negative prices.
    Warnings: fewer than 500 bars, single-day moves beyond 1000%.
    """
    result = ValidationResult()

    if not history:
        result.errors.append("No price history data")
        return result

    if len(history) < MIN_EXPECTED_POINTS:
        result.warnings.append(
            f"Only {len(history)} data points (expected {MIN_EXPECTED_POINTS}+)"
        )

    for prev, curr in zip(history, history[1:]):
        if prev.close > 0:
            change = (curr.close - prev.close) / prev.close * 100
            if abs(change) > EXTREME_DAILY_MOVE_PCT:
                result.warnings.append(
                    f"Extreme move on {curr.date.isoformat()}: {change:.0f}% (possible split/data error)"
                )

    negative = sum(
        1 for bar in history if min(bar.open, bar.high, bar.low, bar.close) < 0
    )
    if negative:
        result.errors.append(f"{negative} entries with negative prices")

    return result


def validate_stock_data(
    price: Optional[float],
    market_cap: Optional[float] = None,
    all_time_high: Optional[float] = None,
    ath_decline_pct: Optional[float] = None,
) -> ValidationResult:
    """Check the headline numbers of a match before it is stored."""
    result = ValidationResult()

    if price is None or price <= 0:
        result.errors.append("Price must be positive")

    if market_cap is not None and market_cap <= 0:
        result.errors.append("Market cap must be positive")

    if all_time_high is not None and price is not None and all_time_high < price:
        result.warnings.append("ATH is lower than current price")

    if ath_decline_pct is not None and not 0 <= ath_decline_pct <= 100:
        result.errors.append("ATH decline percentage must be between 0-100")

    return result


def detect_stock_splits(history: Sequence[PriceBar]) -> List[StockSplit]:
    """
    Find gaps between one close and the next open that look like splits.

    A previous-close / open ratio near an integer between 2 and 10 is a
    forward split; a ratio between 0.08 and 0.55 whose inverse is near an
    integer is a reverse split.
    """
    splits = []

    for prev, curr in zip(history, history[1:]):
        if prev.close <= 0 or curr.open <= 0:
            continue
        ratio = prev.close / curr.open

        if 1.8 < ratio < 10.5:
            rounded = round(ratio)
            if abs(ratio - rounded) < 0.15:
                splits.append(StockSplit(curr.date, rounded))
        elif 0.08 < ratio < 0.55:
            inverse = 1 / ratio
            rounded = round(inverse)
            if abs(inverse - rounded) < 0.15:
                splits.append(StockSplit(curr.date, -rounded))

    return splits


def cross_validate_price(
    primary: Optional[float],
    secondary: Optional[float],
    tolerance: float = 0.05,
) -> CrossValidation:
    """
    Confidence in a price given up to two sources.

    No usable price: 0. One source: 100. Two sources within ``tolerance`` of
    their average: 100, otherwise 66.
    """
    prices = [p for p in (primary, secondary) if p is not None and p > 0]

    if not prices:
        return CrossValidation(False, 0, None)
    if len(prices) == 1:
        return CrossValidation(True, 100, prices[0])

    average = sum(prices) / len(prices)
    deviation = max(abs(p - average) / average for p in prices)
    consistent = deviation <= tolerance
    return CrossValidation(consistent, 100 if consistent else 66, average)


def has_minimum_history(
    history: Sequence[PriceBar],
    years: float = 1.0,
    as_of: Optional[date] = None,
) -> bool:
    """True when the first bar is at least ``years`` before ``as_of`` (default: today)."""
    if not history:
        return False
    as_of = as_of or date.today()
    cutoff = (pd.Timestamp(as_of) - pd.DateOffset(months=int(round(years * 12)))).date()
    return history[0].date <= cutoff
