"""
Tests for the ATH-recovery scan run.

The screener and history sources are replaced with in-process fakes and the
run is recorded in an InMemoryStore.
"""

import asyncio
from datetime import date

import pytest

from config.settings import AthScanSettings
from data.errors import MarketDataError
from data.models import Candidate
from scanner.ath_scanner import AthRecoveryScanner
from scanner.scan_log import ScanStatus
from storage import InMemoryStore, ScanKind, StoreError


def recovery_closes():
    """$100 ATH, then two separate recoveries from $1.00 to $3.50."""
    return [100.0] * 50 + [1.0] * 100 + [3.5] * 20 + [1.0] * 130 + [3.5] * 20 + [1.0] * 280


def candidate(ticker, close=3.0, ath=100.0, exchange="NASDAQ", name=None, sources=None):
    return Candidate(
        ticker=ticker,
        history_ticker=ticker,
        exchange=exchange,
        market="america",
        name=name or f"{ticker} Corp",
        close=close,
        all_time_high=ath,
        market_cap=5e6,
        sources=list(sources or [exchange]),
    )


class FakeScreener:
    """Per exchange group: a candidate list or an exception to raise."""

    def __init__(self, groups):
        self.groups = groups
        self.calls = []

    async def fetch_market(self, market, **filters):
        group = filters["exchanges"][0]
        self.calls.append((market, group, filters))
        result = self.groups.get(group, [])
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self):
        pass


class FakeHistory:
    """Per ticker: bars or an exception to raise."""

    def __init__(self, histories):
        self.histories = histories
        self.api_calls = 0

    async def get_history(self, ticker, years=5):
        self.api_calls += 1
        result = self.histories.get(ticker, [])
        if isinstance(result, Exception):
            raise result
        return result

    async def close(self):
        pass


class HangingQuotes:
    """Second price source that never answers."""

    def __init__(self):
        self.api_calls = 0

    def remaining_calls(self):
        return 25

    async def get_quote_price(self, ticker):
        self.api_calls += 1
        await asyncio.sleep(30)

    async def close(self):
        pass


class FailingMatchStore(InMemoryStore):
    async def save_match(self, kind, record, events):
        raise StoreError("insert failed")


def run_scan(store, screener, history, settings, **scan_overrides):
    scanner = AthRecoveryScanner(
        store,
        screener=screener,
        history=history,
        settings=settings,
        scan_settings=AthScanSettings(**scan_overrides),
    )
    return asyncio.run(scanner.run())


class TestAthRecoveryRun:
    """End-to-end runs over fake sources."""

    def test_match_is_stored_with_events(self, make_bars, settings):
        bars = make_bars(recovery_closes(), start=date(2018, 1, 1))
        store = InMemoryStore()
        screener = FakeScreener({"NASDAQ": [candidate("AAA")]})
        history = FakeHistory({"AAA": bars})

        result = run_scan(store, screener, history, settings)

        assert result.status == ScanStatus.COMPLETED
        assert result.counters["stocks_from_source"] == 1
        assert result.counters["candidates_after_prefilter"] == 1
        assert result.counters["stocks_scanned"] == 1
        assert result.counters["stocks_found"] == 1
        assert result.counters["api_calls_yahoo"] == 1

        record = store.matches[ScanKind.ATH]["AAA"]
        assert record["ath_decline_pct"] == pytest.approx(97.0)
        assert record["all_time_high"] == pytest.approx(100.0)
        assert record["growth_event_count"] == 2
        assert record["score"] == 3
        assert record["highest_growth_pct"] == pytest.approx(250.0)
        assert record["five_year_low"] == pytest.approx(1.0)
        assert record["purchase_limit"] == pytest.approx(1.2)
        assert record["confidence_score"] == 100
        assert record["needs_review"] is False
        assert len(store.events[ScanKind.ATH]["AAA"]) == 2
        assert len(store.price_history["AAA"]) == len(bars)

        log = store.scan_logs[ScanKind.ATH][result.scan_id]
        assert log["status"] == "completed"
        assert [d["result"] for d in log["details"]] == ["match"]

    def test_every_exchange_group_is_queried_with_ath_column(self, settings):
        screener = FakeScreener({})

        run_scan(InMemoryStore(), screener, FakeHistory({}), settings)

        assert [group for _, group, _ in screener.calls] == ["NYSE", "NASDAQ", "AMEX"]
        assert all(filters["include_ath"] for _, _, filters in screener.calls)

    def test_ticker_in_two_groups_is_scanned_once(self, settings):
        screener = FakeScreener({
            "NYSE": [candidate("DUAL", exchange="NYSE")],
            "NASDAQ": [candidate("DUAL", exchange="NASDAQ")],
        })
        history = FakeHistory({})
        store = InMemoryStore()

        result = run_scan(store, screener, history, settings)

        assert result.counters["stocks_from_source"] == 1
        assert history.api_calls == 1
        [detail] = store.scan_logs[ScanKind.ATH][result.scan_id]["details"]
        assert detail["source"] == "both"
        assert detail["reject_reason"] == "No historical data"

    def test_pre_filter_rejects_without_history_calls(self, settings):
        screener = FakeScreener({
            "NASDAQ": [
                candidate("HALF", close=50.0),
                candidate("OTCX", exchange="OTC"),
                candidate("LEV", name="Acme 3X Daily Bull Shares"),
            ],
        })
        history = FakeHistory({})
        store = InMemoryStore()

        result = run_scan(store, screener, history, settings)

        assert result.status == ScanStatus.COMPLETED
        assert result.counters["candidates_after_prefilter"] == 0
        assert history.api_calls == 0
        reasons = {d["ticker"]: d["reject_reason"] for d in store.scan_logs[ScanKind.ATH][result.scan_id]["details"]}
        assert reasons["HALF"].startswith("ATH decline 50.0%")
        assert reasons["OTCX"].startswith("Exchange not supported")
        assert reasons["LEV"].startswith("Leveraged")

    def test_decline_outside_band_after_history(self, make_bars, settings):
        # History ATH of 100 puts a $10 close at 90%, below the 95% floor
        bars = make_bars(recovery_closes(), start=date(2018, 1, 1))
        screener = FakeScreener({"NASDAQ": [candidate("AAA", close=10.0, ath=None)]})
        store = InMemoryStore()

        result = run_scan(store, screener, FakeHistory({"AAA": bars}), settings)

        [detail] = store.scan_logs[ScanKind.ATH][result.scan_id]["details"]
        assert detail["result"] == "rejected"
        assert detail["decline_pct"] == pytest.approx(90.0)
        assert store.matches[ScanKind.ATH] == {}

    def test_ticker_failure_makes_run_partial(self, make_bars, settings):
        bars = make_bars(recovery_closes(), start=date(2018, 1, 1))
        screener = FakeScreener({"NASDAQ": [candidate("AAA"), candidate("BAD")]})
        history = FakeHistory({"AAA": bars, "BAD": MarketDataError("HTTP 500")})
        store = InMemoryStore()

        result = run_scan(store, screener, history, settings)

        assert result.status == ScanStatus.PARTIAL
        assert result.counters["stocks_scanned"] == 2
        assert result.counters["stocks_found"] == 1
        assert "BAD: HTTP 500" in result.errors
        assert "AAA" in store.matches[ScanKind.ATH]

    def test_failing_group_is_an_error_not_a_failure(self, settings):
        screener = FakeScreener({
            "NYSE": MarketDataError("HTTP 503"),
            "NASDAQ": [candidate("HALF", close=50.0)],
        })

        result = run_scan(InMemoryStore(), screener, FakeHistory({}), settings)

        assert result.status == ScanStatus.PARTIAL
        assert any("Sourcing NYSE failed" in e for e in result.errors)

    def test_all_groups_failing_fails_the_run(self, settings):
        error = MarketDataError("HTTP 503")
        screener = FakeScreener({"NYSE": error, "NASDAQ": error, "AMEX": error})
        store = InMemoryStore()

        result = run_scan(store, screener, FakeHistory({}), settings)

        assert result.status == ScanStatus.FAILED
        assert store.scan_logs[ScanKind.ATH][result.scan_id]["status"] == "failed"
        assert store.error_logs[-1]["severity"] == "critical"

    def test_store_failure_fails_the_run(self, make_bars, settings):
        bars = make_bars(recovery_closes(), start=date(2018, 1, 1))
        screener = FakeScreener({"NASDAQ": [candidate("AAA")]})
        store = FailingMatchStore()

        result = run_scan(store, screener, FakeHistory({"AAA": bars}), settings)

        assert result.status == ScanStatus.FAILED
        assert "insert failed" in result.errors[-1]

    def test_settings_are_loaded_from_store_rows(self, settings):
        store = InMemoryStore(settings_rows=[{"key": "exchange_groups", "value": '["NYSE"]'}])
        screener = FakeScreener({})
        scanner = AthRecoveryScanner(store, screener=screener, history=FakeHistory({}), settings=settings)

        asyncio.run(scanner.run())

        assert [group for _, group, _ in screener.calls] == ["NYSE"]

    def test_hanging_quote_source_keeps_screener_price(self, make_bars, settings):
        bars = make_bars(recovery_closes(), start=date(2018, 1, 1))
        fast_settings = settings.model_copy(update={"history_timeout_seconds": 0.2})
        quotes = HangingQuotes()
        store = InMemoryStore()
        scanner = AthRecoveryScanner(
            store,
            screener=FakeScreener({"NASDAQ": [candidate("AAA")]}),
            history=FakeHistory({"AAA": bars}),
            cross_validator=quotes,
            settings=fast_settings,
            scan_settings=AthScanSettings(),
        )

        result = asyncio.run(scanner.run())

        assert result.status == ScanStatus.COMPLETED
        assert result.counters["api_calls_alpha_vantage"] == 1
        assert store.matches[ScanKind.ATH]["AAA"]["confidence_score"] == 100
