"""
ATH-recovery scan.

Finds stocks trading 95-99% below their all-time high that have recovered
strongly from troughs more than once.

Phases:
1. Source candidates per exchange group from the screener (with its ATH column)
2. Pre-filter on screener data only, no history calls
3. Deep scan in small concurrent batches under a stall guard and a total budget
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config.markets import is_leveraged_product
from config.settings import AthScanSettings, Settings, get_settings
from data.alpha_vantage_client import AlphaVantageClient
from data.errors import MarketDataError, UpstreamTimeoutError
from data.models import Candidate, PriceBar
from data.tradingview_client import TradingViewClient
from data.yahoo_client import YahooClient
from scanner.budget import ScanBudget, run_in_batches
from scanner.growth import (
    analyze_growth_events,
    analyze_stable_with_spikes,
    calculate_ath,
    calculate_five_year_low,
    calculate_three_year_low,
)
from scanner.scan_log import DetailResult, ScanDetail, ScanRecorder, ScanResult
from scanner.validator import (
    cross_validate_price,
    detect_stock_splits,
    has_minimum_history,
    validate_price_history,
    validate_stock_data,
)
from storage import ScanKind, ScanStore, StoreError, create_store
from utils.helpers import decline_from_high, run_with_timeout
from utils.logging import ScanPhaseLogger

logger = logging.getLogger(__name__)

PREFILTER_LOWER_SLACK = 0.9  # screener ATH may be lower than the history ATH
PREFILTER_UPPER_SLACK = 0.5
EXTREME_GROWTH_PCT = 1000


class AthRecoveryScanner:
    """
    One ATH-recovery run.

    Usage:
        scanner = AthRecoveryScanner(store, screener, yahoo, alpha_vantage)
        result = await scanner.run()
    """

    def __init__(
        self,
        store: ScanStore,
        screener: Optional[TradingViewClient] = None,
        history: Optional[YahooClient] = None,
        cross_validator: Optional[AlphaVantageClient] = None,
        settings: Optional[Settings] = None,
        scan_settings: Optional[AthScanSettings] = None,
    ):
        """
        Initialize the scanner.

        Args:
            store: Persistence for the run, matches and events
            screener: Candidate source (creates one if not provided)
            history: Daily bar source (creates one if not provided)
            cross_validator: Optional second price source
            settings: Application settings
            scan_settings: Scan parameters; loaded from the store when None
        """
        self.settings = settings or get_settings()
        self.store = store
        self.screener = screener or TradingViewClient(self.settings)
        self.history = history or YahooClient(self.settings)
        self.cross_validator = cross_validator
        self.scan_settings = scan_settings
        self.recorder = ScanRecorder(store, ScanKind.ATH)

    # =========================================================================
    # Run
    # =========================================================================

    async def run(self) -> ScanResult:
        """Execute the scan. Never raises; failures end as a ``failed`` result."""
        yahoo_calls = self.history.api_calls
        av_calls = self.cross_validator.api_calls if self.cross_validator else 0

        try:
            await self.recorder.start()

            if self.scan_settings is None:
                self.scan_settings = AthScanSettings.from_rows(await self.store.load_settings_rows())
            s = self.scan_settings

            with ScanPhaseLogger("sourcing", scan="ath", groups=len(s.exchange_groups)):
                candidates = await self.source_candidates()
            self.recorder.set_counter("stocks_from_source", len(candidates))

            survivors = self.pre_filter(candidates)
            self.recorder.set_counter("candidates_after_prefilter", len(survivors))
            await self.recorder.checkpoint()

            budget = ScanBudget(
                total_seconds=s.total_budget_seconds,
                stall_seconds=s.stall_timeout_seconds,
            )
            with ScanPhaseLogger("deep_scan", scan="ath", candidates=len(survivors)):
                stopped = await run_in_batches(
                    survivors,
                    self.deep_scan,
                    budget,
                    s.batch_size,
                    on_result=self._on_result,
                    on_batch_done=self._on_batch_done,
                )

            self._count_api_calls(yahoo_calls, av_calls)
            return await self.recorder.finish(stopped)

        except Exception as e:
            self._count_api_calls(yahoo_calls, av_calls)
            return await self.recorder.fail(e)

    def _count_api_calls(self, yahoo_before: int, av_before: int) -> None:
        self.recorder.set_counter("api_calls_yahoo", self.history.api_calls - yahoo_before)
        if self.cross_validator is not None:
            self.recorder.set_counter(
                "api_calls_alpha_vantage", self.cross_validator.api_calls - av_before
            )

    async def _on_batch_done(self) -> None:
        await self.recorder.checkpoint()

    async def _on_result(self, candidate: Candidate, result: Any) -> None:
        self.recorder.increment("stocks_scanned")

        if isinstance(result, StoreError):
            raise result
        if isinstance(result, BaseException):
            message = str(result) or type(result).__name__
            logger.warning(f"Error scanning {candidate.ticker}: {message}")
            self.recorder.add_error(f"{candidate.ticker}: {message}")
            self.recorder.add_detail(
                _detail(candidate, "deep_scan", DetailResult.ERROR, error_message=message)
            )
            return

        detail: ScanDetail = result
        if detail.result == DetailResult.ERROR:
            self.recorder.add_error(f"{candidate.ticker}: {detail.error_message}")
        elif detail.result == DetailResult.MATCH:
            self.recorder.increment("stocks_found")
        self.recorder.add_detail(detail)

    # =========================================================================
    # Phase 1: sourcing
    # =========================================================================

    async def source_candidates(self) -> List[Candidate]:
        """
        Fetch every exchange group concurrently and merge by ticker.

        A ticker returned by several groups keeps the first row and gains the
        other groups as provenance. A failing group is recorded as an error;
        if every group fails the run fails.
        """
        s = self.scan_settings
        groups = list(s.exchange_groups)
        results = await asyncio.gather(
            *(
                self.screener.fetch_market(
                    s.market,
                    min_price=s.min_price,
                    min_avg_volume=s.min_avg_volume,
                    exchanges=[group],
                    include_ath=True,
                    max_results=s.max_candidates_per_group,
                    source=group,
                )
                for group in groups
            ),
            return_exceptions=True,
        )

        merged: Dict[str, Candidate] = {}
        failures = 0
        for group, result in zip(groups, results):
            if isinstance(result, BaseException):
                failures += 1
                logger.error(f"Sourcing {group} failed: {result}")
                self.recorder.add_error(f"Sourcing {group} failed: {result}")
                continue
            for candidate in result:
                existing = merged.get(candidate.ticker)
                if existing is None:
                    merged[candidate.ticker] = candidate
                elif group not in existing.sources:
                    existing.sources.append(group)

        if groups and failures == len(groups):
            raise MarketDataError("Screener returned no data for any exchange group")
        if not merged:
            self.recorder.add_error("Screener returned 0 candidates")

        logger.info(f"Sourced {len(merged)} unique candidates from {len(groups) - failures} group(s)")
        return list(merged.values())

    # =========================================================================
    # Phase 2: pre-filter
    # =========================================================================

    def _prefilter_reason(self, candidate: Candidate) -> Optional[str]:
        s = self.scan_settings
        exchange = (candidate.exchange or "").upper()
        if not any(allowed.upper() in exchange for allowed in s.allowed_exchanges):
            return f"Exchange not supported: {candidate.exchange}"
        if is_leveraged_product(candidate.name):
            return f"Leveraged or inverse product: {candidate.name}"
        if candidate.sector and candidate.sector in s.excluded_sectors:
            return f"Excluded sector: {candidate.sector}"
        if candidate.close <= 0:
            return f"Price <= 0: {candidate.close}"

        decline = decline_from_high(candidate.all_time_high, candidate.close)
        if decline is not None:
            if decline < s.ath_decline_min * PREFILTER_LOWER_SLACK:
                return f"ATH decline {decline:.1f}% < {s.ath_decline_min}% (screener ATH {candidate.all_time_high:.2f})"
            if decline > s.ath_decline_max + PREFILTER_UPPER_SLACK:
                return f"ATH decline {decline:.1f}% > {s.ath_decline_max}% (screener ATH {candidate.all_time_high:.2f})"
        return None

    def pre_filter(self, candidates: List[Candidate]) -> List[Candidate]:
        """Drop candidates that cannot match, recording a detail for each."""
        survivors = []
        for candidate in candidates:
            reason = self._prefilter_reason(candidate)
            if reason is None:
                survivors.append(candidate)
            else:
                self.recorder.add_detail(
                    _detail(candidate, "pre_filter", DetailResult.REJECTED, reject_reason=reason)
                )
        logger.info(f"{len(survivors)} of {len(candidates)} candidates pass the pre-filter")
        return survivors

    # =========================================================================
    # Phase 3: deep scan
    # =========================================================================

    async def _fetch_history(self, candidate: Candidate) -> List[PriceBar]:
        return await run_with_timeout(
            self.history.get_history(candidate.history_ticker, self.scan_settings.history_years),
            self.settings.history_timeout_seconds,
            label=f"History for {candidate.history_ticker}",
        )

    async def _confidence(self, candidate: Candidate) -> int:
        """Confidence in the screener price; 100 when no second source answers."""
        if self.cross_validator is None or self.cross_validator.remaining_calls() <= 0:
            return 100
        try:
            second = await run_with_timeout(
                self.cross_validator.get_quote_price(candidate.ticker),
                self.settings.history_timeout_seconds,
                label=f"Quote for {candidate.ticker}",
            )
        except UpstreamTimeoutError as e:
            logger.warning(f"{e}, keeping screener price")
            second = None
        return cross_validate_price(candidate.close, second).confidence

    async def deep_scan(self, candidate: Candidate) -> ScanDetail:
        """
        Fetch history for one candidate and decide match or reject.

        Business rejections and bad data come back as a detail. Store
        failures propagate.
        """
        s = self.scan_settings
        detail = _detail(candidate, "deep_scan", DetailResult.REJECTED)

        history = await self._fetch_history(candidate)
        detail.history_days = len(history)
        if not history:
            detail.reject_reason = "No historical data"
            return detail

        history_check = validate_price_history(history)
        if not history_check.is_valid:
            detail.result = DetailResult.ERROR
            detail.error_message = ", ".join(history_check.errors)
            return detail

        if not has_minimum_history(history, s.min_history_years):
            detail.reject_reason = f"Less than {s.min_history_years:g} year(s) of history (oldest: {history[0].date})"
            return detail

        history_ath = calculate_ath(history)
        detail.history_ath = history_ath.price if history_ath else None
        effective_ath = max(
            [p for p in (candidate.all_time_high, detail.history_ath) if p is not None and p > 0],
            default=None,
        )
        if effective_ath is None:
            detail.reject_reason = "Could not determine ATH"
            return detail

        decline = decline_from_high(effective_ath, candidate.close)
        detail.decline_pct = round(decline, 2)
        if not s.ath_decline_min <= decline <= s.ath_decline_max:
            detail.reject_reason = (
                f"ATH decline {decline:.1f}% outside range {s.ath_decline_min}-{s.ath_decline_max}% "
                f"(effective ATH {effective_ath:.2f})"
            )
            return detail

        growth = analyze_growth_events(
            history,
            s.growth_threshold_pct,
            s.min_consecutive_days,
            s.growth_lookback_years,
        )
        detail.event_count = len(growth.events)
        detail.score = growth.score
        detail.highest_pct = growth.highest_growth_pct
        if len(growth.events) < s.min_growth_events:
            detail.reject_reason = f"Only {len(growth.events)} growth events (need {s.min_growth_events}+)"
            return detail

        if s.require_stable_with_spikes:
            stable = analyze_stable_with_spikes(history)
            if not stable.is_stable_with_spikes:
                detail.reject_reason = (
                    f"No stable base with spikes (decline from median {stable.max_decline_from_median:.1f}%)"
                )
                return detail

        confidence = await self._confidence(candidate)

        validation = validate_stock_data(
            candidate.close, candidate.market_cap, effective_ath, decline
        )
        if not validation.is_valid:
            detail.result = DetailResult.ERROR
            detail.error_message = f"Validation failed: {', '.join(validation.errors)}"
            return detail

        review_reasons = list(validation.warnings)
        splits = detect_stock_splits(history)
        if splits:
            review_reasons.append(f"{len(splits)} potential stock split(s) detected")
        if growth.highest_growth_pct > EXTREME_GROWTH_PCT:
            review_reasons.append(f"Extreme growth: {growth.highest_growth_pct:.0f}%")

        five_year_low = calculate_five_year_low(history)
        three_year_low = calculate_three_year_low(history)
        purchase_limit = five_year_low.price * s.purchase_limit_multiplier if five_year_low else None

        record = {
            "ticker": candidate.ticker,
            "company_name": candidate.name or candidate.ticker,
            "sector": candidate.sector,
            "exchange": candidate.exchange,
            "current_price": candidate.close,
            "all_time_high": effective_ath,
            "ath_decline_pct": round(decline, 2),
            "five_year_low": five_year_low.price if five_year_low else None,
            "three_year_low": three_year_low.price if three_year_low else None,
            "purchase_limit": purchase_limit,
            "score": growth.score,
            "growth_event_count": len(growth.events),
            "highest_growth_pct": growth.highest_growth_pct,
            "highest_growth_date": growth.highest_growth_date.isoformat() if growth.highest_growth_date else None,
            "confidence_score": confidence,
            "needs_review": bool(review_reasons),
            "review_reason": "; ".join(review_reasons) or None,
            "market_cap": candidate.market_cap,
            "source": candidate.source,
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }
        await self.store.save_match(
            ScanKind.ATH, record, [event.to_dict() for event in growth.events]
        )
        await self.store.save_price_history(candidate.ticker, _price_rows(history))

        logger.info(
            f">>> MATCH: {candidate.ticker} | score={growth.score} | "
            f"decline={decline:.1f}% | events={len(growth.events)}"
        )
        detail.result = DetailResult.MATCH
        return detail


def _detail(candidate: Candidate, phase: str, result: DetailResult, **fields: Any) -> ScanDetail:
    screener_decline = decline_from_high(candidate.all_time_high, candidate.close)
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
        screener_ath=candidate.all_time_high,
        screener_decline_pct=round(screener_decline, 2) if screener_decline is not None else None,
        **fields,
    )


def _price_rows(history: List[PriceBar]) -> List[Dict[str, Any]]:
    return [
        {
            "trade_date": bar.date.isoformat(),
            "open_price": bar.open,
            "high_price": bar.high,
            "low_price": bar.low,
            "close_price": bar.close,
            "volume": bar.volume,
        }
        for bar in history
    ]


async def _close_all(*clients: Any) -> None:
    await asyncio.gather(*(c.close() for c in clients if c is not None), return_exceptions=True)


async def run_ath_scan(
    settings: Optional[Settings] = None,
    store: Optional[ScanStore] = None,
) -> ScanResult:
    """Build the clients, run one ATH-recovery scan, and close the clients."""
    settings = settings or get_settings()
    store = store or create_store(settings=settings)

    screener = TradingViewClient(settings)
    history = YahooClient(settings)
    alpha_vantage = AlphaVantageClient(settings=settings)
    try:
        scanner = AthRecoveryScanner(store, screener, history, alpha_vantage, settings)
        return await scanner.run()
    finally:
        await _close_all(screener, history, alpha_vantage)
