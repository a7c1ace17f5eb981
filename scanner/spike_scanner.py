"""
Spike scan.

Finds stocks with a stable base price and temporary spikes far above it,
across several global markets. The candidate pool is larger than one run can
deep-scan, so runs rotate: tickers never scanned go first (shuffled), then the
ones scanned longest ago.
"""

import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

import pandas as pd

from config.settings import Settings, SpikeScanSettings, get_settings
from data.models import Candidate
from data.tradingview_client import TradingViewClient
from data.yahoo_client import YahooClient
from scanner.budget import ScanBudget, run_in_batches
from scanner.growth import calculate_three_year_low
from scanner.scan_log import DetailResult, ScanDetail, ScanRecorder, ScanResult
from scanner.spikes import analyze_spike_events
from scanner.validator import detect_stock_splits, validate_price_history
from storage import ScanKind, ScanStore, StoreError, create_store
from utils.helpers import run_with_timeout
from utils.logging import ScanPhaseLogger

logger = logging.getLogger(__name__)

EXTREME_SPIKE_PCT = 2000


def prioritize_candidates(
    candidates: List[Candidate],
    scan_history: Mapping[str, Mapping[str, Any]],
    rng: Optional[random.Random] = None,
) -> List[Candidate]:
    """
    Order candidates for this run.

    Never-scanned tickers come first in random order, then previously scanned
    tickers by ``last_scanned_at``, oldest first.
    """
    rng = rng or random.Random()
    fresh = [c for c in candidates if c.ticker not in scan_history]
    seen = [c for c in candidates if c.ticker in scan_history]

    rng.shuffle(fresh)
    seen.sort(key=lambda c: pd.to_datetime(scan_history[c.ticker].get("last_scanned_at"), utc=True))

    logger.info(f"Prioritized {len(fresh)} new + {len(seen)} re-scan candidates")
    return fresh + seen


class SpikeScanner:
    """
    One spike-scan run.

    Usage:
        scanner = SpikeScanner(store, screener, yahoo)
        result = await scanner.run()
    """

    def __init__(
        self,
        store: ScanStore,
        screener: Optional[TradingViewClient] = None,
        history: Optional[YahooClient] = None,
        settings: Optional[Settings] = None,
        scan_settings: Optional[SpikeScanSettings] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.screener = screener or TradingViewClient(self.settings)
        self.history = history or YahooClient(self.settings)
        self.scan_settings = scan_settings
        self.rng = rng or random.Random()
        self.recorder = ScanRecorder(store, ScanKind.SPIKE)

    async def run(self) -> ScanResult:
        """Execute the scan. Never raises; failures end as a ``failed`` result."""
        yahoo_calls = self.history.api_calls

        try:
            await self.recorder.start()

            if self.scan_settings is None:
                self.scan_settings = SpikeScanSettings.from_rows(await self.store.load_settings_rows())
            s = self.scan_settings
            self.recorder.markets_scanned = list(s.markets)

            with ScanPhaseLogger("sourcing", scan="spike", markets=len(s.markets)):
                candidates = await self.screener.fetch_markets(
                    s.markets,
                    min_price=s.min_price,
                    min_avg_volume=s.min_avg_volume,
                    min_range_ratio=s.min_range_ratio,
                    source="tradingview",
                )
            self.recorder.set_counter("stocks_from_source", len(candidates))
            if not candidates:
                self.recorder.add_error("No candidates found from any market")

            survivors = self.pre_filter(candidates)
            scan_history = await self.store.load_scan_history(c.ticker for c in survivors)
            ordered = prioritize_candidates(survivors, scan_history, self.rng)
            await self.recorder.checkpoint()

            budget = ScanBudget(total_seconds=s.time_budget_seconds)
            with ScanPhaseLogger("deep_scan", scan="spike", candidates=len(ordered)):
                stopped = await run_in_batches(
                    ordered,
                    self.deep_scan,
                    budget,
                    s.batch_size,
                    on_result=self._on_result,
                    on_batch_done=self._on_batch_done,
                    pause_seconds=s.batch_pause_seconds,
                )

            self.recorder.set_counter("api_calls_yahoo", self.history.api_calls - yahoo_calls)
            return await self.recorder.finish(stopped)

        except Exception as e:
            self.recorder.set_counter("api_calls_yahoo", self.history.api_calls - yahoo_calls)
            return await self.recorder.fail(e)

    async def _on_batch_done(self) -> None:
        await self.recorder.checkpoint()

    async def _on_result(self, candidate: Candidate, result: Any) -> None:
        self.recorder.increment("stocks_scanned")

        if isinstance(result, StoreError):
            raise result
        if isinstance(result, BaseException):
            message = str(result) or type(result).__name__
            logger.warning(f"Error scanning {candidate.ticker}: {message}")
            detail = _detail(candidate, DetailResult.ERROR, error_message=message)
        else:
            detail = result

        if detail.result == DetailResult.ERROR:
            self.recorder.add_error(f"{candidate.ticker}: {detail.error_message}")
        elif detail.result == DetailResult.MATCH:
            self.recorder.increment("stocks_found")
            if detail.is_new:
                self.recorder.increment("new_stocks_found")
        self.recorder.add_detail(detail)

        await self.store.record_scan_history(candidate.ticker, candidate.market, detail.result.value)

    def pre_filter(self, candidates: List[Candidate]) -> List[Candidate]:
        """Drop excluded countries (case-insensitive) and excluded sectors."""
        s = self.scan_settings
        excluded_countries = {c.lower() for c in s.excluded_countries}
        survivors = []

        for candidate in candidates:
            reason = None
            if candidate.country and candidate.country.lower() in excluded_countries:
                reason = f"Excluded country: {candidate.country}"
            elif candidate.sector and candidate.sector in s.excluded_sectors:
                reason = f"Excluded sector: {candidate.sector}"

            if reason is None:
                survivors.append(candidate)
            else:
                self.recorder.add_detail(
                    _detail(candidate, DetailResult.REJECTED, phase="pre_filter", reject_reason=reason)
                )

        logger.info(f"{len(survivors)} of {len(candidates)} candidates pass the pre-filter")
        return survivors

    async def deep_scan(self, candidate: Candidate) -> ScanDetail:
        """Fetch three years of bars for one candidate and decide match or reject."""
        s = self.scan_settings
        detail = _detail(candidate, DetailResult.REJECTED)

        history = await run_with_timeout(
            self.history.get_history(candidate.history_ticker, s.history_years),
            self.settings.history_timeout_seconds,
            label=f"History for {candidate.history_ticker}",
        )
        detail.history_days = len(history)
        if not history:
            detail.reject_reason = "No historical data"
            return detail

        history_check = validate_price_history(history)
        if not history_check.is_valid:
            detail.result = DetailResult.ERROR
            detail.error_message = ", ".join(history_check.errors)
            return detail

        if len(history) < s.min_history_points:
            detail.reject_reason = f"Only {len(history)} data points (need {s.min_history_points})"
            return detail

        splits = detect_stock_splits(history)
        three_year_low = calculate_three_year_low(history)

        analysis = analyze_spike_events(
            history,
            s.min_spike_pct,
            s.min_spike_duration_days,
            s.lookback_months,
        )
        detail.event_count = len(analysis.events)
        detail.score = analysis.spike_score
        detail.highest_pct = analysis.highest_spike_pct

        if len(analysis.events) < s.min_spike_count:
            detail.reject_reason = f"Only {len(analysis.events)} spikes (need {s.min_spike_count}+)"
            return detail

        change_12m = analysis.price_change_12m
        if change_12m is not None and change_12m < -s.max_price_decline_12m_pct:
            detail.reject_reason = (
                f"Price declined {change_12m:.1f}% over 12m (max -{s.max_price_decline_12m_pct}%)"
            )
            return detail

        base_decline = analysis.base_decline_pct
        if base_decline is not None and base_decline < -s.max_base_decline_pct:
            detail.reject_reason = f"Base price declined {base_decline:.1f}% (max -{s.max_base_decline_pct}%)"
            return detail

        existing = await self.store.get_match(ScanKind.SPIKE, candidate.ticker)
        detail.is_new = existing is None

        review_reasons = []
        if splits:
            review_reasons.append(f"{len(splits)} potential stock split(s) detected")
        if analysis.highest_spike_pct > EXTREME_SPIKE_PCT:
            review_reasons.append(f"Extreme spike: {analysis.highest_spike_pct:.0f}%")

        record = {
            "ticker": candidate.ticker,
            "yahoo_ticker": candidate.history_ticker,
            "company_name": candidate.name or candidate.ticker,
            "sector": candidate.sector,
            "exchange": candidate.exchange,
            "market": candidate.market,
            "country": candidate.country,
            "current_price": candidate.close,
            "three_year_low": three_year_low.price if three_year_low else None,
            "base_price_median": analysis.base_price_median,
            "price_12m_ago": (
                candidate.close / (1 + change_12m / 100)
                if change_12m is not None and change_12m > -100 else None
            ),
            "price_change_12m_pct": change_12m,
            "base_decline_pct": base_decline,
            "spike_count": len(analysis.events),
            "highest_spike_pct": analysis.highest_spike_pct,
            "highest_spike_date": analysis.highest_spike_date.isoformat() if analysis.highest_spike_date else None,
            "spike_score": analysis.spike_score,
            "avg_volume_30d": candidate.avg_volume_30d,
            "market_cap": candidate.market_cap,
            "last_updated": datetime.now(timezone.utc).isoformat(),
            "scan_session_id": self.recorder.scan_id,
            "needs_review": bool(review_reasons),
            "review_reason": "; ".join(review_reasons) or None,
            # Re-discovered stocks reappear
            "is_deleted": False,
            "is_archived": False,
        }
        await self.store.save_match(
            ScanKind.SPIKE, record, [event.to_dict() for event in analysis.events]
        )

        logger.info(
            f">>> MATCH: {candidate.ticker} | score={analysis.spike_score} | "
            f"spikes={len(analysis.events)} | max={analysis.highest_spike_pct:.0f}%"
        )
        detail.result = DetailResult.MATCH
        return detail


def _detail(
    candidate: Candidate,
    result: DetailResult,
    phase: str = "deep_scan",
    **fields: Any,
) -> ScanDetail:
    return ScanDetail(
        ticker=candidate.ticker,
        phase=phase,
        result=result,
        name=candidate.name,
        market=candidate.market,
        exchange=candidate.exchange,
        source=candidate.source,
        sector=candidate.sector,
        country=candidate.country,
        price=candidate.close,
        **fields,
    )


async def run_spike_scan(
    settings: Optional[Settings] = None,
    store: Optional[ScanStore] = None,
) -> ScanResult:
    """Build the clients, run one spike scan, and close the clients."""
    settings = settings or get_settings()
    store = store or create_store(settings=settings)

    screener = TradingViewClient(settings)
    history = YahooClient(settings)
    try:
        return await SpikeScanner(store, screener, history, settings).run()
    finally:
        await asyncio.gather(screener.close(), history.close(), return_exceptions=True)
