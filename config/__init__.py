from .settings import Settings, get_settings, AthScanSettings, SpikeScanSettings
from .markets import MARKET_COUNTRIES, EXCHANGE_SUFFIXES, normalize_ticker

__all__ = [
    "Settings",
    "get_settings",
    "AthScanSettings",
    "SpikeScanSettings",
    "MARKET_COUNTRIES",
    "EXCHANGE_SUFFIXES",
    "normalize_ticker",
]
