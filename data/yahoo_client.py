"""
Yahoo Finance chart client.

Daily OHLC history behind a cookie + crumb session:
1. GET the consent host without following redirects to collect a session cookie
2. Exchange the cookie for a crumb token
3. Send cookie and crumb with every chart request

The session is cached for a fixed TTL. A 401/403 triggers exactly one
re-handshake; concurrent callers share that handshake.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from config.settings import Settings, get_settings
from data.errors import SessionError, TransportError
from data.models import PriceBar
from utils.helpers import dict_get_nested, retry_with_backoff, to_float
from utils.logging import log_api_call

logger = logging.getLogger(__name__)


USER_AGENTS = [
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:121.0) Gecko/20100101 Firefox/121.0",
]

AUTH_STATUS = {401, 403}
RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass
class YahooSession:
    """Cookie and crumb pair obtained from one handshake."""

    cookie: str
    crumb: str
    created_at: float

    def is_expired(self, ttl_seconds: float) -> bool:
        return time.monotonic() - self.created_at >= ttl_seconds


class _AuthRejected(Exception):
    """Chart request answered with 401/403."""


class YahooClient:
    """
    Async client for Yahoo Finance daily bars.

    One instance owns its session, its user-agent rotation, and its call
    counter. Share an instance across concurrent tasks; do not share the
    state across instances.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the chart client.

        Args:
            settings: Application settings.
            http_client: Pre-built HTTP client (tests pass one with a mock transport).
        """
        self.settings = settings or get_settings()
        self.hosts = [
            self.settings.yahoo_primary_host.rstrip("/"),
            self.settings.yahoo_fallback_host.rstrip("/"),
        ]
        self.session_ttl = self.settings.yahoo_session_ttl_seconds
        self.api_calls = 0
        self.handshakes = 0

        self._client: Optional[httpx.AsyncClient] = http_client
        self._session: Optional[YahooSession] = None
        self._session_lock = asyncio.Lock()
        self._ua_index = 0

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

    def next_user_agent(self) -> str:
        """Round-robin over the user-agent pool."""
        agent = USER_AGENTS[self._ua_index % len(USER_AGENTS)]
        self._ua_index += 1
        return agent

    # =========================================================================
    # Session
    # =========================================================================

    async def _handshake(self) -> YahooSession:
        client = await self._get_client()
        agent = self.next_user_agent()
        self.handshakes += 1

        try:
            consent = await client.get(
                self.settings.yahoo_cookie_url,
                headers={"User-Agent": agent},
                follow_redirects=False,
            )
        except httpx.TransportError as e:
            raise SessionError(f"Cookie request failed: {e}") from e

        cookies = [
            header.split(";", 1)[0].strip()
            for header in consent.headers.get_list("set-cookie")
            if header
        ]
        if not cookies:
            raise SessionError(f"No session cookie returned (HTTP {consent.status_code})")
        cookie = "; ".join(cookies)

        try:
            crumb_response = await client.get(
                self.settings.yahoo_crumb_url,
                headers={"User-Agent": agent, "Cookie": cookie},
            )
        except httpx.TransportError as e:
            raise SessionError(f"Crumb request failed: {e}") from e

        crumb = crumb_response.text.strip() if crumb_response.status_code == 200 else ""
        if not crumb or "<" in crumb:
            raise SessionError(f"Invalid crumb (HTTP {crumb_response.status_code})")

        logger.info("Yahoo session established")
        return YahooSession(cookie=cookie, crumb=crumb, created_at=time.monotonic())

    async def get_session(self, stale: Optional[YahooSession] = None) -> YahooSession:
        """
        Return a usable session, handshaking if needed.

        Pass the session that was just rejected as ``stale`` to force a
        refresh. Callers waiting on the lock reuse a session another caller
        refreshed in the meantime instead of handshaking again.
        """
        async with self._session_lock:
            current = self._session
            if (
                current is not None
                and current is not stale
                and not current.is_expired(self.session_ttl)
            ):
                return current
            self._session = None
            self._session = await self._handshake()
            return self._session

    # =========================================================================
    # Chart requests
    # =========================================================================

    async def _request_chart(
        self,
        host: str,
        ticker: str,
        params: Dict[str, Any],
        session: YahooSession,
    ) -> Optional[Dict[str, Any]]:
        """One chart request. Returns None for 404 or a non-JSON body."""
        client = await self._get_client()
        url = f"{host}/v8/finance/chart/{ticker}"
        self.api_calls += 1
        started = time.perf_counter()

        try:
            response = await client.get(
                url,
                params={**params, "crumb": session.crumb},
                headers={"User-Agent": self.next_user_agent(), "Cookie": session.cookie},
            )
        except httpx.TransportError as e:
            log_api_call("yahoo", host, ticker, False, _elapsed_ms(started), str(e))
            raise TransportError(f"Yahoo {ticker} via {host}: {e}") from e

        elapsed = _elapsed_ms(started)
        if response.status_code in AUTH_STATUS:
            log_api_call("yahoo", host, ticker, False, elapsed, f"HTTP {response.status_code}")
            raise _AuthRejected()
        if response.status_code in RETRYABLE_STATUS:
            log_api_call("yahoo", host, ticker, False, elapsed, f"HTTP {response.status_code}")
            raise TransportError(f"Yahoo {ticker} via {host}: HTTP {response.status_code}")

        log_api_call("yahoo", host, ticker, response.status_code < 400, elapsed)
        try:
            # 404 still carries a chart.error body
            return response.json()
        except ValueError:
            return None

    async def _request_with_fallback(
        self,
        ticker: str,
        params: Dict[str, Any],
        session: YahooSession,
    ) -> Optional[Dict[str, Any]]:
        """Try the primary host, then the alternate host once on transport failure."""
        try:
            return await self._request_chart(self.hosts[0], ticker, params, session)
        except TransportError as e:
            logger.warning(f"{e}; retrying on {self.hosts[1]}")
            return await self._request_chart(self.hosts[1], ticker, params, session)

    async def _fetch_once(self, ticker: str, params: Dict[str, Any]) -> List[PriceBar]:
        session = await self.get_session()
        try:
            payload = await self._request_with_fallback(ticker, params, session)
        except _AuthRejected:
            logger.info(f"Yahoo rejected session for {ticker}, re-handshaking")
            session = await self.get_session(stale=session)
            try:
                payload = await self._request_with_fallback(ticker, params, session)
            except _AuthRejected as e:
                raise SessionError(f"Yahoo rejected {ticker} after re-handshake") from e

        return parse_chart(payload, ticker)

    async def get_history(self, ticker: str, years: float = 5) -> List[PriceBar]:
        """
        Get daily bars for the last ``years`` years.

        Args:
            ticker: Yahoo symbol, including any exchange suffix
            years: How far back to fetch

        Returns:
            Bars in date order. Empty when Yahoo has no usable data.

        Raises:
            TransportError: when both hosts keep failing after retries
            SessionError: when the session cannot be (re)established
        """
        now = datetime.now(timezone.utc)
        start = now - timedelta(days=round(365.25 * years))
        params = {
            "period1": int(start.timestamp()),
            "period2": int(now.timestamp()),
            "interval": "1d",
        }

        return await retry_with_backoff(
            lambda: self._fetch_once(ticker, params),
            max_retries=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
            exceptions=(TransportError,),
        )


def parse_chart(payload: Any, ticker: str = "") -> List[PriceBar]:
    """
    Convert a chart response into bars.

    Any embedded error or unexpected shape yields an empty list. Bars with a
    missing open, high, low or close are skipped; a missing volume becomes 0.
    """
    if not isinstance(payload, dict):
        return []
    if dict_get_nested(payload, "chart.error"):
        logger.debug(f"Yahoo error for {ticker}: {dict_get_nested(payload, 'chart.error.description')}")
        return []

    result = dict_get_nested(payload, "chart.result.0")
    if not isinstance(result, dict):
        return []

    timestamps = result.get("timestamp")
    quote = dict_get_nested(result, "indicators.quote.0")
    if not isinstance(timestamps, list) or not isinstance(quote, dict):
        return []

    columns = {}
    for key in ("open", "high", "low", "close", "volume"):
        values = quote.get(key)
        if not isinstance(values, list):
            values = []
        columns[key] = values

    offset = to_float(dict_get_nested(result, "meta.gmtoffset")) or 0.0

    bars = []
    for i, ts in enumerate(timestamps):
        ohlc = [to_float(_at(columns[key], i)) for key in ("open", "high", "low", "close")]
        ts_value = to_float(ts)
        if ts_value is None or any(v is None for v in ohlc):
            continue
        volume = to_float(_at(columns["volume"], i)) or 0.0
        try:
            bar_date = datetime.fromtimestamp(ts_value + offset, tz=timezone.utc).date()
        except (OverflowError, OSError, ValueError):
            continue
        bars.append(PriceBar(bar_date, ohlc[0], ohlc[1], ohlc[2], ohlc[3], int(volume)))

    bars.sort(key=lambda b: b.date)
    return bars


def _at(values: List[Any], index: int) -> Any:
    return values[index] if index < len(values) else None


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
