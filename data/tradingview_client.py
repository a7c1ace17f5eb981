"""
TradingView screener client.
Candidate source for both scans: paginated market queries, ticker
normalization, and multi-market fan-out with de-duplication.
"""

import asyncio
import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Sequence

import httpx

from config.markets import (
    MARKET_COUNTRIES,
    OTC_EXCHANGES,
    STATUS_SUFFIX_PATTERN,
    is_excluded_instrument,
    normalize_ticker,
)
from config.settings import Settings, get_settings
from data.errors import DataShapeError, MarketDataError, TransportError
from data.models import Candidate
from utils.helpers import chunked, retry_with_backoff, to_float
from utils.logging import log_api_call

logger = logging.getLogger(__name__)


BASE_COLUMNS = [
    "name",
    "description",
    "close",
    "change",
    "volume",
    "average_volume_30d_calc",
    "market_cap_basic",
    "sector",
    "price_52_week_high",
    "price_52_week_low",
    "exchange",
    "country",
]
ATH_COLUMN = "High.All"

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


class TradingViewClient:
    """
    Async client for the TradingView scanner endpoint.

    Usage:
        client = TradingViewClient()
        candidates = await client.fetch_markets(["america", "canada"], min_range_ratio=1.5)
        await client.close()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the screener client.

        Args:
            settings: Application settings.
            http_client: Pre-built HTTP client (tests pass one with a mock transport).
        """
        self.settings = settings or get_settings()
        self.base_url = self.settings.tradingview_base_url.rstrip("/")
        self.page_size = self.settings.screener_page_size
        self.max_per_market = self.settings.screener_max_per_market
        self.api_calls = 0

        self._client: Optional[httpx.AsyncClient] = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=self.settings.http_timeout_seconds,
                limits=httpx.Limits(max_keepalive_connections=10),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    # =========================================================================
    # Requests
    # =========================================================================

    async def _post_scan(self, market: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST one scan query, retrying transport failures."""
        url = f"{self.base_url}/{market}/scan"

        async def _attempt() -> Dict[str, Any]:
            client = await self._get_client()
            self.api_calls += 1
            started = time.perf_counter()
            try:
                response = await client.post(url, json=payload)
            except httpx.TransportError as e:
                log_api_call("tradingview", url, market, False, _elapsed_ms(started), str(e))
                raise TransportError(f"TradingView {market}: {e}") from e

            if response.status_code in RETRYABLE_STATUS:
                log_api_call("tradingview", url, market, False, _elapsed_ms(started), f"HTTP {response.status_code}")
                raise TransportError(f"TradingView {market} HTTP {response.status_code}")
            if response.status_code >= 400:
                log_api_call("tradingview", url, market, False, _elapsed_ms(started), f"HTTP {response.status_code}")
                raise MarketDataError(f"TradingView {market} HTTP {response.status_code}")

            log_api_call("tradingview", url, market, True, _elapsed_ms(started))
            try:
                data = response.json()
            except ValueError as e:
                raise DataShapeError(f"TradingView {market}: response is not JSON") from e
            if not isinstance(data, dict):
                raise DataShapeError(f"TradingView {market}: unexpected response type")
            return data

        return await retry_with_backoff(
            _attempt,
            max_retries=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            exceptions=(TransportError,),
        )

    @staticmethod
    def build_payload(
        market: str,
        offset: int,
        limit: int,
        min_price: float = 0.10,
        min_avg_volume: float = 0.0,
        exchanges: Optional[Sequence[str]] = None,
        include_ath: bool = False,
    ) -> Dict[str, Any]:
        """Build the scanner query for one page."""
        operands = [
            {"operation": {"operator": "equal", "operand": ["type", "stock"]}},
            {"operation": {"operator": "greater", "operand": ["close", min_price]}},
            {"operation": {"operator": "greater", "operand": ["average_volume_30d_calc", min_avg_volume]}},
            {"operation": {"operator": "greater", "operand": ["price_52_week_high", 0]}},
            {"operation": {"operator": "greater", "operand": ["price_52_week_low", 0]}},
        ]
        if exchanges:
            operands.append(
                {"operation": {"operator": "in_range", "operand": ["exchange", list(exchanges)]}}
            )
        if include_ath:
            operands.append({"operation": {"operator": "greater", "operand": [ATH_COLUMN, 0]}})

        columns = BASE_COLUMNS + ([ATH_COLUMN] if include_ath else [])

        return {
            "columns": columns,
            "ignore_unknown_fields": True,
            "options": {"lang": "en"},
            "range": [offset, offset + limit],
            "sort": {"sortBy": "average_volume_30d_calc", "sortOrder": "desc"},
            "symbols": {},
            "markets": [market],
            "filter2": {"operator": "and", "operands": operands},
        }

    # =========================================================================
    # Parsing
    # =========================================================================

    @staticmethod
    def parse_rows(
        rows: Iterable[Dict[str, Any]],
        columns: Sequence[str],
        market: str,
    ) -> List[Candidate]:
        """
        Turn raw ``{s, d}`` rows into candidates.

        Columns are matched by name, so missing trailing values and nulls are
        tolerated. Rows without a ticker or a positive close, OTC listings and
        non-equity instruments are dropped.
        """
        candidates = []

        for row in rows:
            if not isinstance(row, dict):
                continue
            symbol = str(row.get("s") or "")
            values = row.get("d") or []
            if not isinstance(values, list):
                continue
            d = dict(zip(columns, values))

            exchange_prefix, _, symbol_ticker = symbol.partition(":")
            ticker = (symbol_ticker or d.get("name") or "").strip()
            exchange = str(d.get("exchange") or exchange_prefix or "").upper()
            close = to_float(d.get("close")) or 0.0
            description = d.get("description") or ""

            if not ticker or close <= 0:
                continue
            if exchange in OTC_EXCHANGES:
                continue
            if is_excluded_instrument(description):
                continue

            candidates.append(Candidate(
                ticker=STATUS_SUFFIX_PATTERN.sub("", ticker),
                history_ticker=normalize_ticker(ticker, exchange),
                exchange=exchange,
                market=market,
                name=description or ticker,
                full_symbol=symbol,
                close=close,
                change=to_float(d.get("change")) or 0.0,
                volume=to_float(d.get("volume")) or 0.0,
                avg_volume_30d=to_float(d.get("average_volume_30d_calc")),
                market_cap=to_float(d.get("market_cap_basic")),
                sector=d.get("sector") or None,
                country=d.get("country") or MARKET_COUNTRIES.get(market),
                high_52w=to_float(d.get("price_52_week_high")),
                low_52w=to_float(d.get("price_52_week_low")),
                all_time_high=to_float(d.get(ATH_COLUMN)),
            ))

        return candidates

    # =========================================================================
    # Market queries
    # =========================================================================

    async def fetch_market(
        self,
        market: str,
        min_price: float = 0.10,
        min_avg_volume: float = 0.0,
        min_range_ratio: Optional[float] = None,
        exchanges: Optional[Sequence[str]] = None,
        include_ath: bool = False,
        max_results: Optional[int] = None,
        source: Optional[str] = None,
    ) -> List[Candidate]:
        """
        Fetch every candidate in one market that passes the broad filters.

        Page 0 reports the total count; further pages are requested until the
        total or the per-market cap is reached, or a page comes back empty.

        Args:
            market: Screener market id (e.g. "america")
            min_price: Minimum close
            min_avg_volume: Minimum 30-day average volume
            min_range_ratio: Minimum 52w high / 52w low, applied after parsing
            exchanges: Restrict to these exchange codes
            include_ath: Also request the all-time-high column
            max_results: Cap on rows requested (defaults to the per-market cap)
            source: Provenance label attached to each candidate

        Returns:
            Candidates from this market

        Raises:
            MarketDataError: when the market cannot be queried
        """
        cap = max_results or self.max_per_market
        page_size = min(self.page_size, cap)
        columns = BASE_COLUMNS + ([ATH_COLUMN] if include_ath else [])

        def _payload(offset: int) -> Dict[str, Any]:
            return self.build_payload(
                market, offset, page_size, min_price, min_avg_volume, exchanges, include_ath
            )

        first = await self._post_scan(market, _payload(0))
        total = int(to_float(first.get("totalCount")) or 0)
        rows = list(first.get("data") or [])
        last_page_size = len(rows)

        offset = page_size
        limit = min(total, cap)
        while offset < limit and last_page_size > 0:
            page = await self._post_scan(market, _payload(offset))
            page_rows = list(page.get("data") or [])
            last_page_size = len(page_rows)
            rows.extend(page_rows)
            offset += page_size

        candidates = self.parse_rows(rows[:cap], columns, market)
        if min_range_ratio is not None:
            candidates = [
                c for c in candidates if c.range_ratio is not None and c.range_ratio >= min_range_ratio
            ]
        if source:
            for c in candidates:
                c.sources = [source]

        logger.info(f"TradingView {market}: {total} reported, {len(rows)} fetched, {len(candidates)} kept")
        return candidates

    async def fetch_markets(
        self,
        markets: Sequence[str],
        batch_size: Optional[int] = None,
        **filters: Any,
    ) -> List[Candidate]:
        """
        Fetch several markets, a few at a time.

        A failing market is logged and contributes nothing. Tickers seen in
        more than one market keep the row with the largest range ratio. The
        result is sorted by range ratio, highest first.
        """
        batch_size = batch_size or self.settings.screener_market_concurrency
        collected: List[Candidate] = []

        for batch in chunked(list(markets), batch_size):
            results = await asyncio.gather(
                *(self.fetch_market(market, **filters) for market in batch),
                return_exceptions=True,
            )
            for market, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.error(f"TradingView {market} failed: {result}")
                    continue
                logger.info(f"TradingView {market}: {len(result)} candidates")
                collected.extend(result)

        deduped = dedupe_by_range_ratio(collected)
        logger.info(f"TradingView: {len(collected)} raw -> {len(deduped)} unique candidates")
        return deduped


def dedupe_by_range_ratio(candidates: Iterable[Candidate]) -> List[Candidate]:
    """Keep one candidate per ticker, the one with the largest range ratio, sorted descending."""
    best: Dict[str, Candidate] = {}
    for candidate in candidates:
        existing = best.get(candidate.ticker)
        if existing is None or (candidate.range_ratio or 0) > (existing.range_ratio or 0):
            best[candidate.ticker] = candidate
    return sorted(best.values(), key=lambda c: c.range_ratio or 0, reverse=True)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
