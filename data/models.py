"""
Data records shared by the adapters and scanners.
"""

from dataclasses import dataclass, field, asdict
from datetime import date
from typing import Any, Dict, List, Optional


@dataclass
class PriceBar:
    """One daily OHLC bar."""

    date: date
    open: float
    high: float
    low: float
    close: float
    volume: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        return data


@dataclass
class Candidate:
    """A screener row, normalized. Re-sourced on every run, never persisted as is."""

    ticker: str  # venue symbol, e.g. "SHOP"
    history_ticker: str  # symbol for the price-history source, e.g. "SHOP.TO"
    exchange: str
    market: str
    name: str = ""
    full_symbol: str = ""
    close: float = 0.0
    change: float = 0.0
    volume: float = 0.0
    avg_volume_30d: Optional[float] = None
    market_cap: Optional[float] = None
    sector: Optional[str] = None
    country: Optional[str] = None
    high_52w: Optional[float] = None
    low_52w: Optional[float] = None
    all_time_high: Optional[float] = None
    sources: List[str] = field(default_factory=list)

    @property
    def range_ratio(self) -> Optional[float]:
        """52-week high over 52-week low."""
        if self.high_52w and self.low_52w and self.low_52w > 0:
            return self.high_52w / self.low_52w
        return None

    @property
    def source(self) -> str:
        """Provenance label: the single source, or "both"/"multiple"."""
        if not self.sources:
            return "unknown"
        if len(self.sources) == 1:
            return self.sources[0]
        return "both" if len(self.sources) == 2 else "multiple"

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["range_ratio"] = self.range_ratio
        return data
