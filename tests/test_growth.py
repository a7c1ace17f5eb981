"""
Tests for growth-event detection and price levels.

Coverage:
- trough-to-peak recovery scenario over 1000 bars
- V-shape, monotone and short series
- triangular scoring
- determinism
- ATH / period lows / stable-with-spikes
"""

from datetime import date

import numpy as np
import pytest

from data.models import PriceBar
from scanner.growth import (
    analyze_growth_events,
    analyze_stable_with_spikes,
    calculate_ath,
    calculate_five_year_low,
    calculate_period_low,
    calculate_three_year_low,
    triangular_score,
)


def recovery_history(make_bars):
    """
    1000 bars: slide to a $1.00 low on day 10, climb to a $3.50 high on day 40
    with six closes at or above $3.00, then settle around $2.
    """
    closes = [2.0 - 0.09 * i for i in range(10)]
    closes.append(1.05)
    closes += list(np.linspace(1.1, 2.9, 27))
    closes += [3.2] * 6
    closes += [2.0] * (1000 - len(closes))

    bars = make_bars(closes, start=date(2018, 1, 1), spread=0.01)
    bars[10].low = 1.0
    bars[10].high = 1.1
    for i in range(38, 44):
        bars[i].high = 3.2
    bars[40].high = 3.5
    return bars


class TestGrowthEvents:
    """Tests for analyze_growth_events."""

    def test_single_recovery(self, make_bars):
        """Trough $1.00, peak $3.50, threshold 200%: one event of about 250%."""
        bars = recovery_history(make_bars)
        assert len(bars) == 1000

        analysis = analyze_growth_events(bars, growth_threshold=200, min_consecutive_days=5)

        assert len(analysis.events) == 1
        event = analysis.events[0]
        assert event.start_date == bars[10].date
        assert event.end_date == bars[40].date
        assert event.start_price == pytest.approx(1.0)
        assert event.peak_price == pytest.approx(3.5)
        assert event.growth_pct == pytest.approx(250.0)
        assert event.consecutive_days_above == 6
        assert event.is_valid is True
        assert analysis.score == 1
        assert analysis.highest_growth_pct == pytest.approx(250.0)
        assert analysis.highest_growth_date == bars[40].date

    def test_v_shape_gives_one_event_at_threshold(self, make_bars):
        """Drop to X, recover to 2X held for several bars, threshold 100%."""
        closes = list(np.linspace(4.0, 1.0, 21)) + list(np.linspace(1.0, 2.0, 21)[1:]) + [2.0] * 3
        bars = make_bars(closes)

        analysis = analyze_growth_events(bars, growth_threshold=100, min_consecutive_days=2)

        assert len(analysis.events) == 1
        assert analysis.events[0].growth_pct == pytest.approx(100.0)
        assert analysis.events[0].start_price == pytest.approx(1.0)

    def test_monotone_below_threshold_gives_no_events(self, make_bars):
        bars = make_bars(np.linspace(1.0, 2.5, 200))

        analysis = analyze_growth_events(bars, growth_threshold=200)

        assert analysis.events == []
        assert analysis.score == 0

    def test_single_touch_is_not_enough(self, make_bars):
        """A target reached on only one bar is not a recovery."""
        closes = [2.0] * 20 + [1.0] + list(np.linspace(1.2, 2.8, 10)) + [3.1] + [2.0] * 20
        bars = make_bars(closes)

        analysis = analyze_growth_events(bars, growth_threshold=200, min_consecutive_days=5)

        assert analysis.events == []

    def test_short_history_gives_empty_analysis(self, make_bars):
        assert analyze_growth_events(make_bars([1, 2, 3, 4])).events == []

    def test_deterministic(self, make_bars):
        bars = recovery_history(make_bars)

        first = analyze_growth_events(bars)
        second = analyze_growth_events(bars)

        assert [e.to_dict() for e in first.events] == [e.to_dict() for e in second.events]
        assert first.score == second.score

    def test_event_to_dict_uses_iso_dates(self, make_bars):
        event = analyze_growth_events(recovery_history(make_bars)).events[0]
        data = event.to_dict()

        assert data["start_date"] == "2018-01-11"
        assert set(data) == {
            "start_date", "end_date", "start_price", "peak_price",
            "growth_pct", "consecutive_days_above", "is_valid",
        }


class TestTriangularScore:
    @pytest.mark.parametrize("n,expected", [(0, 0), (1, 1), (2, 3), (3, 6), (4, 10), (5, 15)])
    def test_score(self, n, expected):
        assert triangular_score(n) == expected


class TestPriceLevels:
    """Tests for ATH and period lows."""

    def test_ath_is_highest_high(self, make_bars):
        bars = make_bars([1, 5, 3], spread=0.1)
        ath = calculate_ath(bars)

        assert ath.price == pytest.approx(5.5)
        assert ath.date == bars[1].date

    def test_ath_of_empty_history(self):
        assert calculate_ath([]) is None

    def test_period_lows_respect_window(self):
        bars = [
            PriceBar(date(2017, 1, 2), 1, 1, 0.5, 1),
            PriceBar(date(2019, 6, 1), 3, 3, 2.0, 3),
            PriceBar(date(2022, 6, 1), 4, 4, 3.0, 4),
            PriceBar(date(2023, 1, 2), 5, 5, 4.5, 5),
        ]

        assert calculate_period_low(bars).price == 0.5
        assert calculate_five_year_low(bars).price == 2.0
        assert calculate_three_year_low(bars).price == 3.0
        assert calculate_three_year_low(bars, as_of=date(2025, 1, 1)).price == 3.0

    def test_period_low_skips_non_positive(self):
        bars = [PriceBar(date(2023, 1, 2), 1, 1, 0, 1), PriceBar(date(2023, 1, 3), 2, 2, 1.5, 2)]
        assert calculate_period_low(bars).price == 1.5


class TestStableWithSpikes:
    """Tests for analyze_stable_with_spikes."""

    def test_stable_base_with_spike(self, make_bars):
        closes = [1.0] * 200
        bars = make_bars(closes, spread=0.02)
        bars[100].high = 2.5

        result = analyze_stable_with_spikes(bars, max_decline_pct=10, min_spike_pct=100)

        assert result.is_stable_with_spikes is True
        assert result.spike_count == 1
        assert result.spike_dates == [bars[100].date]

    def test_declining_base_is_not_stable(self, make_bars):
        bars = make_bars(np.linspace(2.0, 0.5, 200))
        bars[150].high = 5.0

        result = analyze_stable_with_spikes(bars, max_decline_pct=10, min_spike_pct=100)

        assert result.is_stable_with_spikes is False
