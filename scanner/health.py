"""
Upstream and store health probe.
"""

import logging
from typing import Any, Dict, Optional

from config.settings import Settings, get_settings
from data.alpha_vantage_client import AlphaVantageClient
from data.errors import MarketDataError
from data.yahoo_client import YahooClient
from storage import ScanKind, ScanStore, StoreError
from utils.helpers import run_with_timeout

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
DEGRADED = "degraded"
DOWN = "down"
RATE_LIMITED = "rate_limited"
UNKNOWN = "unknown"


async def _probe_history(yahoo: YahooClient, settings: Settings) -> str:
    try:
        bars = await run_with_timeout(
            yahoo.get_history(settings.health_reference_ticker, years=1),
            settings.history_timeout_seconds,
            label="Health probe",
        )
    except MarketDataError as e:
        logger.warning(f"History provider probe failed: {e}")
        return DOWN
    return HEALTHY if bars else DEGRADED


def _probe_quota(alpha_vantage: Optional[AlphaVantageClient]) -> str:
    if alpha_vantage is None:
        return UNKNOWN
    return HEALTHY if alpha_vantage.remaining_calls() > 0 else RATE_LIMITED


async def _last_scan_status(store: ScanStore) -> str:
    try:
        latest = await store.latest_scan_log(ScanKind.ATH)
    except StoreError as e:
        logger.warning(f"Could not read last scan: {e}")
        return UNKNOWN
    return str(latest.get("status", UNKNOWN)) if latest else UNKNOWN


async def run_health_check(
    store: ScanStore,
    yahoo: YahooClient,
    alpha_vantage: Optional[AlphaVantageClient] = None,
    settings: Optional[Settings] = None,
) -> Dict[str, Any]:
    """
    Probe every dependency, store the result, and return it.

    The row is written only when the store answers the ping.
    """
    settings = settings or get_settings()

    database_ok = await store.ping()
    row = {
        "yahoo_finance_status": await _probe_history(yahoo, settings),
        "alpha_vantage_status": _probe_quota(alpha_vantage),
        "database_status": HEALTHY if database_ok else DOWN,
        "last_scan_status": await _last_scan_status(store) if database_ok else UNKNOWN,
    }

    if database_ok:
        await store.record_health_check(row)
    logger.info(f"Health check: {row}")
    return row
