"""
In-process store. Default backend for local runs and the test double.
"""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from storage.base import ScanKind, ScanStore


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class InMemoryStore(ScanStore):
    """Dictionary-backed store; state lives as long as the instance."""

    backend_name = "memory"

    def __init__(self, settings_rows: Optional[List[Dict[str, Any]]] = None):
        self.settings_rows: List[Dict[str, Any]] = list(settings_rows or [])
        self.scan_logs: Dict[ScanKind, Dict[str, Dict[str, Any]]] = {k: {} for k in ScanKind}
        self.matches: Dict[ScanKind, Dict[str, Dict[str, Any]]] = {k: {} for k in ScanKind}
        self.events: Dict[ScanKind, Dict[str, List[Dict[str, Any]]]] = {k: {} for k in ScanKind}
        self.price_history: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.scan_history: Dict[str, Dict[str, Any]] = {}
        self.error_logs: List[Dict[str, Any]] = []
        self.health_checks: List[Dict[str, Any]] = []

    async def load_settings_rows(self) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.settings_rows)

    async def create_scan_log(self, kind: ScanKind, fields: Dict[str, Any]) -> str:
        scan_id = str(uuid.uuid4())
        self.scan_logs[kind][scan_id] = {
            "id": scan_id,
            "started_at": _now(),
            "details": [],
            **copy.deepcopy(fields),
        }
        return scan_id

    async def update_scan_log(self, kind: ScanKind, scan_id: str, fields: Dict[str, Any]) -> None:
        self.scan_logs[kind][scan_id].update(copy.deepcopy(fields))

    async def append_scan_details(self, kind: ScanKind, scan_id: str, details: List[Dict[str, Any]]) -> None:
        self.scan_logs[kind][scan_id]["details"].extend(copy.deepcopy(details))

    async def latest_scan_log(self, kind: ScanKind) -> Optional[Dict[str, Any]]:
        logs = list(self.scan_logs[kind].values())
        if not logs:
            return None
        # Insertion order is creation order
        return copy.deepcopy(logs[-1])

    async def get_match(self, kind: ScanKind, ticker: str) -> Optional[Dict[str, Any]]:
        record = self.matches[kind].get(ticker)
        return copy.deepcopy(record) if record is not None else None

    async def save_match(self, kind: ScanKind, record: Dict[str, Any], events: List[Dict[str, Any]]) -> None:
        ticker = record["ticker"]
        merged = {**self.matches[kind].get(ticker, {}), **copy.deepcopy(record)}
        self.matches[kind][ticker] = merged
        self.events[kind][ticker] = [{**copy.deepcopy(e), "ticker": ticker} for e in events]

    async def save_price_history(self, ticker: str, rows: List[Dict[str, Any]]) -> None:
        bars = self.price_history.setdefault(ticker, {})
        for row in rows:
            bars[row["trade_date"]] = {**copy.deepcopy(row), "ticker": ticker}

    async def load_scan_history(self, tickers: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        return {
            t: copy.deepcopy(self.scan_history[t]) for t in tickers if t in self.scan_history
        }

    async def record_scan_history(self, ticker: str, market: str, result: str) -> None:
        previous = self.scan_history.get(ticker, {})
        self.scan_history[ticker] = {
            "ticker": ticker,
            "market": market,
            "last_scanned_at": _now(),
            "scan_count": int(previous.get("scan_count", 0)) + 1,
            "last_result": result,
        }

    async def log_errors(self, entries: List[Dict[str, Any]]) -> None:
        for entry in entries:
            self.error_logs.append({"created_at": _now(), **copy.deepcopy(entry)})

    async def record_health_check(self, row: Dict[str, Any]) -> None:
        self.health_checks.append({"checked_at": _now(), **copy.deepcopy(row)})

    async def ping(self) -> bool:
        return True
