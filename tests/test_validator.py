"""
Tests for price and history validation.
"""

from datetime import date

import pytest

from data.models import PriceBar
from scanner.validator import (
    cross_validate_price,
    detect_stock_splits,
    has_minimum_history,
    validate_price_history,
    validate_stock_data,
)


class TestValidatePriceHistory:
    """Tests for validate_price_history."""

    def test_empty_history_is_an_error(self):
        result = validate_price_history([])

        assert not result.is_valid
        assert result.errors == ["No price history data"]

    def test_negative_prices_are_errors(self, make_bars):
        bars = make_bars([1.0] * 600)
        bars[10].low = -0.5

        result = validate_price_history(bars)

        assert not result.is_valid
        assert "1 entries with negative prices" in result.errors

    def test_short_history_is_a_warning_only(self, make_bars):
        result = validate_price_history(make_bars([1.0] * 100))

        assert result.is_valid
        assert any("Only 100 data points" in w for w in result.warnings)

    def test_extreme_move_is_a_warning(self, make_bars):
        bars = make_bars([1.0] * 300 + [20.0] * 300)

        result = validate_price_history(bars)

        assert result.is_valid
        assert any("Extreme move" in w for w in result.warnings)


class TestValidateStockData:
    """Tests for validate_stock_data."""

    def test_valid_match(self):
        result = validate_stock_data(2.0, market_cap=1e7, all_time_high=100.0, ath_decline_pct=98.0)

        assert result.is_valid
        assert result.warnings == []

    def test_non_positive_price(self):
        assert not validate_stock_data(0).is_valid

    def test_decline_out_of_range(self):
        assert not validate_stock_data(1.0, ath_decline_pct=120).is_valid

    def test_ath_below_price_is_a_warning(self):
        result = validate_stock_data(5.0, all_time_high=4.0)

        assert result.is_valid
        assert result.warnings == ["ATH is lower than current price"]


class TestDetectStockSplits:
    """Tests for detect_stock_splits."""

    def test_forward_split(self):
        bars = [
            PriceBar(date(2023, 1, 2), 100, 101, 99, 100),
            PriceBar(date(2023, 1, 3), 50, 51, 49, 50),
        ]

        [split] = detect_stock_splits(bars)

        assert split.date == date(2023, 1, 3)
        assert split.ratio == 2

    def test_reverse_split(self):
        bars = [
            PriceBar(date(2023, 1, 2), 1, 1, 1, 1),
            PriceBar(date(2023, 1, 3), 10, 10, 10, 10),
        ]

        [split] = detect_stock_splits(bars)

        assert split.ratio == -10

    def test_normal_move_is_not_a_split(self):
        bars = [
            PriceBar(date(2023, 1, 2), 10, 10, 10, 10),
            PriceBar(date(2023, 1, 3), 7, 7, 7, 7),
        ]

        assert detect_stock_splits(bars) == []


class TestCrossValidatePrice:
    """Tests for cross_validate_price."""

    def test_no_prices(self):
        result = cross_validate_price(None, None)

        assert result.confidence == 0
        assert result.average_price is None

    def test_single_source_is_full_confidence(self):
        result = cross_validate_price(10.0, None)

        assert result.confidence == 100
        assert result.is_consistent

    def test_agreeing_sources(self):
        result = cross_validate_price(10.0, 10.2)

        assert result.confidence == 100
        assert result.average_price == pytest.approx(10.1)

    def test_disagreeing_sources(self):
        result = cross_validate_price(10.0, 14.0)

        assert result.confidence == 66
        assert not result.is_consistent


class TestHasMinimumHistory:
    def test_old_enough(self, make_bars):
        bars = make_bars([1.0] * 400, start=date(2022, 1, 1))
        assert has_minimum_history(bars, years=1.0, as_of=date(2023, 1, 1))

    def test_too_young(self, make_bars):
        bars = make_bars([1.0] * 100, start=date(2022, 10, 1))
        assert not has_minimum_history(bars, years=1.0, as_of=date(2023, 1, 1))

    def test_empty(self):
        assert not has_minimum_history([])
