"""
Configuration settings for the market pattern scanner.

Two layers:
- ``Settings``: process configuration from environment variables / ``.env``.
- ``AthScanSettings`` / ``SpikeScanSettings``: scan parameters stored as
  key/value rows in the store, parsed per field into typed models.
"""

import json
import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, ClassVar, Dict, Iterable, List, Literal, Mapping, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


StoreBackend = Literal["memory", "supabase"]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # API Keys
    alpha_vantage_api_key: str = Field("demo", description="ALPHA_VANTAGE_API_KEY")

    # Store
    store_backend: StoreBackend = Field("memory", description="STORE_BACKEND")
    supabase_url: Optional[str] = Field(None, description="SUPABASE_URL")
    supabase_key: Optional[str] = Field(None, description="SUPABASE_SERVICE_ROLE_KEY or SUPABASE_KEY")

    # Screener
    tradingview_base_url: str = "https://scanner.tradingview.com"
    screener_page_size: int = Field(1500, description="SCREENER_PAGE_SIZE")
    screener_max_per_market: int = Field(5000, description="SCREENER_MAX_PER_MARKET")
    screener_market_concurrency: int = 4

    # Price history
    yahoo_primary_host: str = "https://query1.finance.yahoo.com"
    yahoo_fallback_host: str = "https://query2.finance.yahoo.com"
    yahoo_cookie_url: str = "https://fc.yahoo.com/"
    yahoo_crumb_url: str = "https://query2.finance.yahoo.com/v1/test/getcrumb"
    yahoo_session_ttl_seconds: int = 30 * 60

    # Cross validation
    alpha_vantage_base_url: str = "https://www.alphavantage.co/query"
    alpha_vantage_daily_limit: int = Field(25, description="ALPHA_VANTAGE_DAILY_LIMIT")

    # Network behaviour
    http_timeout_seconds: float = Field(30.0, description="HTTP_TIMEOUT_SECONDS")
    history_timeout_seconds: float = Field(20.0, description="HISTORY_TIMEOUT_SECONDS")
    retry_attempts: int = Field(3, description="RETRY_ATTEMPTS")
    retry_base_delay: float = Field(1.0, description="RETRY_BASE_DELAY")

    # Health check
    health_reference_ticker: str = "AAPL"

    # Paths
    base_dir: Path = Path(__file__).parent.parent

    # Logging
    log_level: str = Field("INFO", description="LOG_LEVEL")
    log_file: Optional[str] = Field(None, description="LOG_FILE")


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# =============================================================================
# Scan parameters (stored as key/value rows)
# =============================================================================

def _coerce_row_value(raw: Any) -> Any:
    """Stored values are JSON text or already-decoded JSON."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except ValueError:
            return raw
    return raw


class ScanSettingsBase(BaseModel):
    """
    Typed scan parameters built from loosely typed settings rows.

    Every field is parsed on its own. A row that fails to parse keeps the
    field's default and logs a warning; unknown keys are ignored.
    """

    row_prefix: ClassVar[str] = ""

    @classmethod
    def from_rows(cls, rows: Optional[Iterable[Mapping[str, Any]]]):
        values: Dict[str, Any] = {}
        fields = cls.model_fields

        for row in rows or []:
            key = str(row.get("key", ""))
            if cls.row_prefix:
                if not key.startswith(cls.row_prefix):
                    continue
                key = key[len(cls.row_prefix):]
            if key not in fields:
                continue

            adapter = TypeAdapter(fields[key].annotation)
            try:
                values[key] = adapter.validate_python(_coerce_row_value(row.get("value")))
            except ValidationError as e:
                logger.warning(
                    f"Settings row {row.get('key')!r} has invalid value "
                    f"{row.get('value')!r}, keeping default: {e.error_count()} error(s)"
                )

        return cls(**values)


class AthScanSettings(ScanSettingsBase):
    """Parameters for the ATH-recovery scan."""

    ath_decline_min: float = 95.0
    ath_decline_max: float = 99.0
    growth_threshold_pct: float = 200.0
    min_growth_events: int = 2
    min_consecutive_days: int = 5
    growth_lookback_years: int = 3
    purchase_limit_multiplier: float = 1.20
    excluded_sectors: List[str] = Field(default_factory=list)

    # Sourcing
    market: str = "america"
    exchange_groups: List[str] = Field(default_factory=lambda: ["NYSE", "NASDAQ", "AMEX"])
    allowed_exchanges: List[str] = Field(default_factory=lambda: ["NYSE", "NASDAQ", "AMEX"])
    min_price: float = 0.0001
    min_avg_volume: float = 0.0
    max_candidates_per_group: int = 1500

    # Deep scan
    history_years: int = 5
    min_history_years: float = 1.0
    batch_size: int = 5
    require_stable_with_spikes: bool = False
    stall_timeout_seconds: float = 90.0
    total_budget_seconds: float = 270.0


class SpikeScanSettings(ScanSettingsBase):
    """Parameters for the spike scan. Rows are stored with a ``zb_`` prefix."""

    row_prefix: ClassVar[str] = "zb_"

    min_spike_pct: float = 100.0
    min_spike_duration_days: int = 4
    min_spike_count: int = 1
    lookback_months: int = 24
    max_price_decline_12m_pct: float = 20.0
    max_base_decline_pct: float = 30.0
    min_avg_volume: float = 50000.0
    min_price: float = 0.10
    min_range_ratio: float = 1.5
    markets: List[str] = Field(
        default_factory=lambda: [
            "america", "europe", "uk", "canada", "australia", "germany", "hongkong", "japan",
        ]
    )
    excluded_sectors: List[str] = Field(default_factory=list)
    excluded_countries: List[str] = Field(
        default_factory=lambda: [
            "Russia", "North Korea", "Iran", "Syria", "Belarus", "Myanmar", "Venezuela", "Cuba",
        ]
    )

    # Deep scan
    history_years: int = 3
    min_history_points: int = 200
    batch_size: int = 10
    time_budget_seconds: float = 240.0
    batch_pause_seconds: float = 0.05
