"""
Tests for spike-event detection.

Coverage:
- 24-month scenario with one long and one short spike
- flat series at any threshold
- non-overlapping events and determinism
- base price robustness, 12-month change and base trend
"""

from datetime import date

import numpy as np
import pytest

from scanner.spikes import analyze_spike_events, rolling_base_prices

BASE = 0.75


def spike_history(make_bars):
    """About 24 months of business days at $0.75 with a 5-day spike to $2.50 and a 2-day spike to $4."""
    closes = [BASE] * 520
    for i in range(130, 135):  # month 6
        closes[i] = 2.50
    for i in range(215, 217):  # month 10
        closes[i] = 4.00
    return make_bars(closes, start=date(2022, 1, 3), spread=0.01, business_days=True)


class TestSpikeEvents:
    """Tests for analyze_spike_events."""

    def test_long_spike_accepted_short_spike_rejected(self, make_bars):
        bars = spike_history(make_bars)

        analysis = analyze_spike_events(bars, spike_threshold_pct=75, min_duration_days=3, lookback_months=24)

        assert len(analysis.events) == 1
        event = analysis.events[0]
        assert event.start_date == bars[130].date
        assert event.end_date == bars[134].date
        assert event.duration_days == 5
        assert event.base_price == pytest.approx(BASE)
        assert event.peak_price == pytest.approx(2.50)
        assert event.spike_pct == pytest.approx(233.33, abs=0.01)
        assert analysis.highest_spike_date == bars[130].date
        assert analysis.base_price_median == pytest.approx(BASE)
        assert analysis.spike_score == pytest.approx(round(2.3333 * 5 / 3, 2), abs=0.01)

    @pytest.mark.parametrize("threshold", [0, 10, 75, 500])
    def test_flat_series_has_no_events(self, make_bars, threshold):
        bars = make_bars([BASE] * 300)

        analysis = analyze_spike_events(bars, spike_threshold_pct=threshold, min_duration_days=1)

        assert analysis.events == []
        assert analysis.spike_score == 0

    def test_events_never_overlap(self, make_bars):
        rng = np.random.default_rng(7)
        closes = np.full(500, 1.0) + rng.normal(0, 0.02, 500)
        for start in (80, 84, 200, 203, 350):
            closes[start : start + 6] *= rng.uniform(2.0, 3.5)
        bars = make_bars(closes, business_days=True)

        events = analyze_spike_events(bars, spike_threshold_pct=50, min_duration_days=2).events

        assert events
        for earlier, later in zip(events, events[1:]):
            assert earlier.end_date < later.start_date

    def test_deterministic(self, make_bars):
        bars = spike_history(make_bars)

        first = analyze_spike_events(bars, 75, 3)
        second = analyze_spike_events(bars, 75, 3)

        assert [e.to_dict() for e in first.events] == [e.to_dict() for e in second.events]
        assert first.spike_score == second.spike_score

    def test_short_history_is_empty(self, make_bars):
        assert analyze_spike_events(make_bars([1.0] * 59)).events == []

    def test_lookback_excludes_old_spikes(self, make_bars):
        bars = spike_history(make_bars)

        analysis = analyze_spike_events(bars, 75, 3, lookback_months=6)

        assert analysis.events == []


class TestBaseAndTrend:
    """Tests for the base price, 12-month change and base trend."""

    def test_rolling_base_ignores_spikes(self):
        bases = rolling_base_prices([1.0] * 70 + [5.0] * 3)

        assert bases[-1] == pytest.approx(1.0)

    def test_twelve_month_decline(self, make_bars):
        bars = make_bars(np.linspace(2.0, 1.0, 520), business_days=True)

        analysis = analyze_spike_events(bars, 75, 3)

        assert analysis.price_change_12m is not None
        assert analysis.price_change_12m < -20
        assert analysis.base_decline_pct < 0

    def test_flat_history_has_zero_change(self, make_bars):
        analysis = analyze_spike_events(make_bars([BASE] * 400, business_days=True), 75, 3)

        assert analysis.price_change_12m == pytest.approx(0.0)
        assert analysis.base_decline_pct == pytest.approx(0.0)
