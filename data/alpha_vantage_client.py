"""
Alpha Vantage quote client.
Secondary price source for cross-validation, limited by a small daily quota.
"""

import logging
import time
from datetime import date
from typing import Callable, Optional

import httpx

from config.settings import Settings, get_settings
from utils.helpers import dict_get_nested, retry_with_backoff, to_float
from data.errors import TransportError
from utils.logging import log_api_call

logger = logging.getLogger(__name__)


class AlphaVantageClient:
    """
    Quota-aware GLOBAL_QUOTE client.

    The quota counter belongs to the instance and resets when the local date
    changes. Once the quota is spent every lookup answers ``None``
    ("unavailable") instead of failing.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        daily_limit: Optional[int] = None,
        today: Callable[[], date] = date.today,
    ):
        self.settings = settings or get_settings()
        self.api_key = api_key or self.settings.alpha_vantage_api_key
        self.base_url = self.settings.alpha_vantage_base_url
        self.daily_limit = daily_limit if daily_limit is not None else self.settings.alpha_vantage_daily_limit
        self.api_calls = 0

        self._client: Optional[httpx.AsyncClient] = http_client
        self._today = today
        self._quota_date = today()
        self._calls_today = 0

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.settings.http_timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    def _roll_quota(self) -> None:
        current = self._today()
        if current != self._quota_date:
            self._quota_date = current
            self._calls_today = 0

    def remaining_calls(self) -> int:
        """Calls left today."""
        self._roll_quota()
        return max(0, self.daily_limit - self._calls_today)

    async def get_quote_price(self, ticker: str) -> Optional[float]:
        """
        Latest price for ``ticker``.

        Returns None when the quota is spent, the request fails, or the body
        has no usable price.
        """
        if self.remaining_calls() <= 0:
            logger.debug(f"Alpha Vantage quota exhausted, skipping {ticker}")
            return None

        self._calls_today += 1
        self.api_calls += 1
        params = {"function": "GLOBAL_QUOTE", "symbol": ticker, "apikey": self.api_key}

        async def _attempt():
            client = await self._get_client()
            started = time.perf_counter()
            try:
                response = await client.get(self.base_url, params=params)
            except httpx.TransportError as e:
                log_api_call("alpha_vantage", "GLOBAL_QUOTE", ticker, False, _elapsed_ms(started), str(e))
                raise TransportError(f"Alpha Vantage {ticker}: {e}") from e
            log_api_call(
                "alpha_vantage", "GLOBAL_QUOTE", ticker, response.status_code == 200, _elapsed_ms(started),
                None if response.status_code == 200 else f"HTTP {response.status_code}",
            )
            return response

        try:
            # Retries are not charged to the quota
            response = await retry_with_backoff(
                _attempt,
                max_retries=self.settings.retry_attempts,
                base_delay=self.settings.retry_base_delay,
                exceptions=(TransportError,),
            )
        except TransportError as e:
            logger.warning(f"Alpha Vantage unavailable for {ticker}: {e}")
            return None

        if response.status_code != 200:
            return None
        try:
            payload = response.json()
        except ValueError:
            return None

        # Keys contain dots, e.g. "05. price"
        price = to_float(dict_get_nested(payload, "Global Quote|05. price", separator="|"))
        if price is None or price <= 0:
            return None
        return price

    async def verify_price(self, ticker: str, expected: float, tolerance: float = 0.05) -> Optional[bool]:
        """
        Check ``expected`` against the Alpha Vantage price.

        Returns None when no second price is available.
        """
        price = await self.get_quote_price(ticker)
        if price is None or expected <= 0:
            return None
        return abs(price - expected) / expected <= tolerance


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
