"""
Audit trail for one scan run.

A run moves ``running -> completed | partial | failed``. Counters and the
detail list are kept in memory and written to the store at checkpoints, so a
poller can follow a run while it is in progress.
"""

import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from storage.base import ScanKind, ScanStore

logger = logging.getLogger(__name__)

MAX_ERRORS = 50
MAX_DETAILS = 5000
ERROR_LOG_LIMIT = 20


class ScanStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class DetailResult(str, Enum):
    MATCH = "match"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass
class ScanDetail:
    """What happened to one candidate."""

    ticker: str
    phase: str  # "pre_filter" or "deep_scan"
    result: DetailResult
    name: Optional[str] = None
    market: Optional[str] = None
    exchange: Optional[str] = None
    source: Optional[str] = None
    sector: Optional[str] = None
    country: Optional[str] = None
    price: Optional[float] = None
    reject_reason: Optional[str] = None
    error_message: Optional[str] = None
    screener_ath: Optional[float] = None
    screener_decline_pct: Optional[float] = None
    history_days: Optional[int] = None
    history_ath: Optional[float] = None
    decline_pct: Optional[float] = None
    event_count: Optional[int] = None
    score: Optional[float] = None
    highest_pct: Optional[float] = None
    is_new: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {k: v for k, v in asdict(self).items() if v is not None}
        data["result"] = self.result.value
        return data


# Counter name -> column name, per scan log table
COUNTER_COLUMNS = {
    ScanKind.ATH: {
        "stocks_from_source": "stocks_from_source",
        "candidates_after_prefilter": "candidates_after_prefilter",
        "stocks_scanned": "stocks_scanned",
        "stocks_found": "stocks_found",
        "api_calls_yahoo": "api_calls_yahoo",
        "api_calls_alpha_vantage": "api_calls_alphavantage",
    },
    ScanKind.SPIKE: {
        "stocks_from_source": "candidates_found",
        "stocks_scanned": "stocks_deep_scanned",
        "stocks_found": "stocks_matched",
        "new_stocks_found": "new_stocks_found",
        "api_calls_yahoo": "api_calls_yahoo",
    },
}


@dataclass
class ScanResult:
    """Terminal summary of a run."""

    scan_id: Optional[str]
    kind: ScanKind
    status: ScanStatus
    counters: Dict[str, int]
    errors: List[str]
    error_count: int
    duration_seconds: float
    stopped_reason: Optional[str] = None
    markets_scanned: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scan_id": self.scan_id,
            "kind": self.kind.value,
            "status": self.status.value,
            **self.counters,
            "errors": self.errors,
            "error_count": self.error_count,
            "duration_seconds": round(self.duration_seconds, 1),
            "stopped_reason": self.stopped_reason,
            "markets_scanned": self.markets_scanned,
        }


class ScanRecorder:
    """
    Collects counters, errors and details for one run and persists them.

    Only the orchestrating coroutine mutates a recorder.
    """

    def __init__(self, store: ScanStore, kind: ScanKind):
        self.store = store
        self.kind = kind
        self.scan_id: Optional[str] = None
        self.counters: Dict[str, int] = {name: 0 for name in COUNTER_COLUMNS[kind]}
        self.errors: List[str] = []
        self.error_count = 0
        self.details: List[Dict[str, Any]] = []
        self.markets_scanned: List[str] = []
        self._unsaved: List[Dict[str, Any]] = []
        self._dropped_details = 0
        self._started = time.monotonic()

    @property
    def duration_seconds(self) -> float:
        return time.monotonic() - self._started

    async def start(self) -> str:
        self._started = time.monotonic()
        self.scan_id = await self.store.create_scan_log(
            self.kind, {"status": ScanStatus.RUNNING.value, **self._counter_fields()}
        )
        logger.info(f"{self.kind.value} scan {self.scan_id} started")
        return self.scan_id

    def increment(self, counter: str, amount: int = 1) -> None:
        self.counters[counter] = self.counters.get(counter, 0) + amount

    def set_counter(self, counter: str, value: int) -> None:
        self.counters[counter] = value

    def add_error(self, message: str) -> None:
        self.error_count += 1
        if len(self.errors) < MAX_ERRORS:
            self.errors.append(message)

    def add_detail(self, detail: ScanDetail) -> None:
        if len(self.details) >= MAX_DETAILS:
            self._dropped_details += 1
            return
        entry = detail.to_dict()
        self.details.append(entry)
        self._unsaved.append(entry)

    def _counter_fields(self) -> Dict[str, Any]:
        columns = COUNTER_COLUMNS[self.kind]
        return {columns[name]: self.counters.get(name, 0) for name in columns}

    async def checkpoint(self) -> None:
        """Write counters and any new details."""
        if self.scan_id is None:
            return
        await self.store.update_scan_log(self.kind, self.scan_id, self._counter_fields())
        if self._unsaved:
            pending, self._unsaved = self._unsaved, []
            await self.store.append_scan_details(self.kind, self.scan_id, pending)

    def _final_fields(self, status: ScanStatus) -> Dict[str, Any]:
        fields = {
            "status": status.value,
            "completed_at": datetime.now(timezone.utc).isoformat(),
            "errors": list(self.errors),
            "duration_seconds": int(round(self.duration_seconds)),
            **self._counter_fields(),
        }
        if self.kind == ScanKind.SPIKE:
            fields["markets_scanned"] = list(self.markets_scanned)
        return fields

    async def finish(self, stopped_reason: Optional[str] = None) -> ScanResult:
        """Close the run as completed or partial."""
        if stopped_reason:
            self.add_error(f"Stopped early: {stopped_reason}")
        if self._dropped_details:
            logger.warning(f"{self._dropped_details} scan details were not recorded (limit {MAX_DETAILS})")

        status = ScanStatus.PARTIAL if (self.error_count or stopped_reason) else ScanStatus.COMPLETED
        await self.checkpoint()
        if self.scan_id is not None:
            await self.store.update_scan_log(self.kind, self.scan_id, self._final_fields(status))

        if self.errors:
            await self.store.log_errors([
                {"source": f"{self.kind.value}_scan", "message": message, "severity": "warning"}
                for message in self.errors[:ERROR_LOG_LIMIT]
            ])

        logger.info(
            f"{self.kind.value} scan {self.scan_id} {status.value}: "
            f"{self.counters} in {self.duration_seconds:.1f}s, {self.error_count} error(s)"
        )
        return self._result(status, stopped_reason)

    async def fail(self, exc: BaseException) -> ScanResult:
        """
        Close the run as failed after an orchestration-level exception.

        Store failures while recording the failure are logged, not raised,
        so the original exception stays the reported cause.
        """
        message = f"Scan failed: {exc}"
        self.add_error(message)
        logger.error(f"{self.kind.value} scan {self.scan_id} failed: {exc}")

        try:
            if self.scan_id is not None:
                await self.store.update_scan_log(
                    self.kind, self.scan_id, self._final_fields(ScanStatus.FAILED)
                )
            await self.store.log_errors([
                {"source": f"{self.kind.value}_scan", "message": message, "severity": "critical"}
            ])
        except Exception as store_exc:
            logger.error(f"Could not record failure of scan {self.scan_id}: {store_exc}")

        return self._result(ScanStatus.FAILED, None)

    def _result(self, status: ScanStatus, stopped_reason: Optional[str]) -> ScanResult:
        return ScanResult(
            scan_id=self.scan_id,
            kind=self.kind,
            status=status,
            counters=dict(self.counters),
            errors=list(self.errors),
            error_count=self.error_count,
            duration_seconds=self.duration_seconds,
            stopped_reason=stopped_reason,
            markets_scanned=list(self.markets_scanned),
        )
