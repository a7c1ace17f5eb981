"""
Tests for scan settings parsing and market reference data.
"""

import pytest

from config.markets import history_suffix, is_excluded_instrument, normalize_ticker
from config.settings import AthScanSettings, SpikeScanSettings


class TestScanSettingsRows:
    """Tests for building scan settings from key/value rows."""

    def test_no_rows_gives_defaults(self):
        settings = AthScanSettings.from_rows(None)

        assert settings.ath_decline_min == 95.0
        assert settings.ath_decline_max == 99.0
        assert settings.growth_threshold_pct == 200.0

    def test_json_text_values_are_decoded(self):
        rows = [
            {"key": "ath_decline_min", "value": "90"},
            {"key": "excluded_sectors", "value": '["Energy", "Utilities"]'},
            {"key": "require_stable_with_spikes", "value": "true"},
        ]

        settings = AthScanSettings.from_rows(rows)

        assert settings.ath_decline_min == 90.0
        assert settings.excluded_sectors == ["Energy", "Utilities"]
        assert settings.require_stable_with_spikes is True

    def test_decoded_values_are_accepted(self):
        settings = AthScanSettings.from_rows([{"key": "min_growth_events", "value": 3}])
        assert settings.min_growth_events == 3

    def test_bad_value_keeps_default_for_that_field_only(self):
        rows = [
            {"key": "growth_threshold_pct", "value": "lots"},
            {"key": "min_consecutive_days", "value": "7"},
        ]

        settings = AthScanSettings.from_rows(rows)

        assert settings.growth_threshold_pct == 200.0
        assert settings.min_consecutive_days == 7

    def test_unknown_keys_are_ignored(self):
        settings = AthScanSettings.from_rows([{"key": "favourite_colour", "value": '"blue"'}])
        assert not hasattr(settings, "favourite_colour")

    def test_spike_rows_use_prefix(self):
        rows = [
            {"key": "zb_min_spike_pct", "value": "150"},
            {"key": "min_spike_count", "value": "9"},
            {"key": "zb_markets", "value": '["america"]'},
        ]

        settings = SpikeScanSettings.from_rows(rows)

        assert settings.min_spike_pct == 150.0
        assert settings.min_spike_count == 1
        assert settings.markets == ["america"]


class TestMarkets:
    """Tests for ticker normalization and instrument filters."""

    @pytest.mark.parametrize("ticker,exchange,expected", [
        ("AAPL", "NASDAQ", "AAPL"),
        ("SHOP", "TSX", "SHOP.TO"),
        ("ABC.H", "TSXV", "ABC.V"),
        ("VOD", "lse", "VOD.L"),
        ("XYZ", "UNKNOWN", "XYZ"),
        ("XYZ", None, "XYZ"),
    ])
    def test_normalize_ticker(self, ticker, exchange, expected):
        assert normalize_ticker(ticker, exchange) == expected

    def test_history_suffix(self):
        assert history_suffix("HKEX") == ".HK"
        assert history_suffix("") == ""

    @pytest.mark.parametrize("name,excluded", [
        ("SPDR S&P 500 ETF", True),
        ("Acme Warrants", True),
        ("Acme Mining Corp", False),
        (None, False),
    ])
    def test_excluded_instruments(self, name, excluded):
        assert is_excluded_instrument(name) is excluded
