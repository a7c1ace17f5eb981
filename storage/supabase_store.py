"""
Supabase (PostgreSQL) store.

The supabase client is synchronous; every call runs in a worker thread so the
scan loop keeps running while a write is in flight.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, TypeVar

from supabase import Client, create_client

from config.settings import Settings, get_settings
from storage.base import ScanKind, ScanStore, StoreError
from utils.helpers import chunked

logger = logging.getLogger(__name__)

T = TypeVar("T")

MATCH_TABLES = {ScanKind.ATH: "stocks", ScanKind.SPIKE: "zonnebloem_stocks"}
EVENT_TABLES = {ScanKind.ATH: "growth_events", ScanKind.SPIKE: "zonnebloem_spike_events"}
SCAN_LOG_TABLES = {ScanKind.ATH: "scan_logs", ScanKind.SPIKE: "zonnebloem_scan_logs"}
SCAN_HISTORY_TABLE = "zonnebloem_scan_history"
PRICE_HISTORY_BATCH = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseStore(ScanStore):
    """Store backed by the Supabase tables of both scans."""

    backend_name = "supabase"

    def __init__(self, settings: Optional[Settings] = None, client: Optional[Client] = None):
        self.settings = settings or get_settings()
        if client is None:
            if not self.settings.supabase_url or not self.settings.supabase_key:
                raise StoreError("SUPABASE_URL and SUPABASE_KEY are required for the supabase store")
            client = create_client(self.settings.supabase_url, self.settings.supabase_key)
            logger.info("Connected to Supabase")
        self.client = client
        # Details already written per run, so appends avoid a read
        self._details: Dict[str, List[Dict[str, Any]]] = {}

    async def _run(self, description: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            raise StoreError(f"Supabase {description} failed: {e}") from e

    async def load_settings_rows(self) -> List[Dict[str, Any]]:
        response = await self._run(
            "settings select",
            lambda: self.client.table("settings").select("key, value").execute(),
        )
        return list(response.data or [])

    async def create_scan_log(self, kind: ScanKind, fields: Dict[str, Any]) -> str:
        table = SCAN_LOG_TABLES[kind]
        response = await self._run(
            f"{table} insert",
            lambda: self.client.table(table).insert({**fields, "details": []}).execute(),
        )
        if not response.data:
            raise StoreError(f"Supabase {table} insert returned no row")
        scan_id = str(response.data[0]["id"])
        self._details[scan_id] = []
        return scan_id

    async def update_scan_log(self, kind: ScanKind, scan_id: str, fields: Dict[str, Any]) -> None:
        table = SCAN_LOG_TABLES[kind]
        await self._run(
            f"{table} update",
            lambda: self.client.table(table).update(fields).eq("id", scan_id).execute(),
        )

    async def append_scan_details(self, kind: ScanKind, scan_id: str, details: List[Dict[str, Any]]) -> None:
        written = self._details.setdefault(scan_id, [])
        written.extend(details)
        await self.update_scan_log(kind, scan_id, {"details": list(written)})

    async def latest_scan_log(self, kind: ScanKind) -> Optional[Dict[str, Any]]:
        table = SCAN_LOG_TABLES[kind]
        response = await self._run(
            f"{table} select",
            lambda: self.client.table(table)
            .select("id, status, started_at, completed_at")
            .order("started_at", desc=True)
            .limit(1)
            .execute(),
        )
        return response.data[0] if response.data else None

    async def get_match(self, kind: ScanKind, ticker: str) -> Optional[Dict[str, Any]]:
        table = MATCH_TABLES[kind]
        response = await self._run(
            f"{table} select",
            lambda: self.client.table(table).select("*").eq("ticker", ticker).limit(1).execute(),
        )
        return response.data[0] if response.data else None

    async def save_match(self, kind: ScanKind, record: Dict[str, Any], events: List[Dict[str, Any]]) -> None:
        match_table = MATCH_TABLES[kind]
        event_table = EVENT_TABLES[kind]
        ticker = record["ticker"]
        rows = [{**event, "ticker": ticker} for event in events]

        def _write() -> None:
            self.client.table(match_table).upsert(record, on_conflict="ticker").execute()
            self.client.table(event_table).delete().eq("ticker", ticker).execute()
            if rows:
                self.client.table(event_table).insert(rows).execute()

        await self._run(f"{match_table} save", _write)

    async def save_price_history(self, ticker: str, rows: List[Dict[str, Any]]) -> None:
        for batch in chunked(rows, PRICE_HISTORY_BATCH):
            payload = [{**row, "ticker": ticker} for row in batch]
            await self._run(
                "price_history upsert",
                lambda: self.client.table("price_history")
                .upsert(payload, on_conflict="ticker,trade_date")
                .execute(),
            )

    async def load_scan_history(self, tickers: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        history: Dict[str, Dict[str, Any]] = {}
        for batch in chunked(list(tickers), 500):
            response = await self._run(
                f"{SCAN_HISTORY_TABLE} select",
                lambda: self.client.table(SCAN_HISTORY_TABLE)
                .select("ticker, market, last_scanned_at, scan_count, last_result")
                .in_("ticker", batch)
                .execute(),
            )
            for row in response.data or []:
                history[row["ticker"]] = row
        return history

    async def record_scan_history(self, ticker: str, market: str, result: str) -> None:
        def _write() -> None:
            existing = (
                self.client.table(SCAN_HISTORY_TABLE)
                .select("scan_count")
                .eq("ticker", ticker)
                .limit(1)
                .execute()
            )
            count = int(existing.data[0].get("scan_count") or 0) if existing.data else 0
            self.client.table(SCAN_HISTORY_TABLE).upsert(
                {
                    "ticker": ticker,
                    "market": market,
                    "last_scanned_at": _now(),
                    "scan_count": count + 1,
                    "last_result": result,
                },
                on_conflict="ticker",
            ).execute()

        await self._run(f"{SCAN_HISTORY_TABLE} upsert", _write)

    async def log_errors(self, entries: List[Dict[str, Any]]) -> None:
        if not entries:
            return
        await self._run(
            "error_logs insert",
            lambda: self.client.table("error_logs").insert(entries).execute(),
        )

    async def record_health_check(self, row: Dict[str, Any]) -> None:
        await self._run(
            "health_checks insert",
            lambda: self.client.table("health_checks").insert(row).execute(),
        )

    async def ping(self) -> bool:
        try:
            await self._run(
                "ping",
                lambda: self.client.table("settings").select("key").limit(1).execute(),
            )
        except StoreError as e:
            logger.warning(str(e))
            return False
        return True
