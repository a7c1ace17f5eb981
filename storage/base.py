"""
Store interface for scan results.
All backends implement this abstract class so the scanners never see the
persistence technology.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


class StoreError(Exception):
    """Base exception for persistence failures."""
    pass


class ScanKind(str, Enum):
    """The two scan variants. Each has its own match, event and log tables."""

    ATH = "ath"
    SPIKE = "spike"


class ScanStore(ABC):
    """
    Abstract persistence boundary.

    Match records are keyed by ticker. ``save_match`` upserts the record and
    replaces all of its child events in one logical write, so stored events
    always correspond to the latest record.
    """

    backend_name: str = "base"

    # Settings ---------------------------------------------------------------

    @abstractmethod
    async def load_settings_rows(self) -> List[Dict[str, Any]]:
        """All ``{key, value}`` settings rows."""
        pass

    # Scan logs --------------------------------------------------------------

    @abstractmethod
    async def create_scan_log(self, kind: ScanKind, fields: Dict[str, Any]) -> str:
        """Insert a run row and return its id."""
        pass

    @abstractmethod
    async def update_scan_log(self, kind: ScanKind, scan_id: str, fields: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def append_scan_details(self, kind: ScanKind, scan_id: str, details: List[Dict[str, Any]]) -> None:
        """Append detail entries to a run; earlier entries are kept."""
        pass

    @abstractmethod
    async def latest_scan_log(self, kind: ScanKind) -> Optional[Dict[str, Any]]:
        pass

    # Matches ----------------------------------------------------------------

    @abstractmethod
    async def get_match(self, kind: ScanKind, ticker: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def save_match(self, kind: ScanKind, record: Dict[str, Any], events: List[Dict[str, Any]]) -> None:
        """Upsert ``record`` by ticker and fully replace its events."""
        pass

    @abstractmethod
    async def save_price_history(self, ticker: str, rows: List[Dict[str, Any]]) -> None:
        """Upsert daily bars by (ticker, trade_date)."""
        pass

    # Rotation history -------------------------------------------------------

    @abstractmethod
    async def load_scan_history(self, tickers: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """History rows for the given tickers, keyed by ticker. Missing tickers are absent."""
        pass

    @abstractmethod
    async def record_scan_history(self, ticker: str, market: str, result: str) -> None:
        """Upsert the rotation row: bump scan_count, stamp last_scanned_at and last_result."""
        pass

    # Operations -------------------------------------------------------------

    @abstractmethod
    async def log_errors(self, entries: List[Dict[str, Any]]) -> None:
        """Append ``{source, message, severity}`` rows to the error log."""
        pass

    @abstractmethod
    async def record_health_check(self, row: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def ping(self) -> bool:
        """True when the store answers a trivial query."""
        pass
