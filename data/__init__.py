"""
Data layer for the market pattern scanner.

Upstream adapters:
- tradingview_client: screener candidate sourcing
- yahoo_client: daily price history (cookie + crumb session)
- alpha_vantage_client: quota-limited secondary quotes

Adapters are imported from their modules directly.
"""

from data.errors import (
    MarketDataError,
    TransportError,
    SessionError,
    UpstreamTimeoutError,
    DataShapeError,
    PriceValidationError,
)
from data.models import Candidate, PriceBar

__all__ = [
    "MarketDataError",
    "TransportError",
    "SessionError",
    "UpstreamTimeoutError",
    "DataShapeError",
    "PriceValidationError",
    "Candidate",
    "PriceBar",
]
