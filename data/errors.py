"""
Exceptions raised by the market data adapters.

Business rejections (a ticker failing a filter) are not exceptions; they are
recorded as scan details. These classes cover the failures that are.
"""


class MarketDataError(Exception):
    """Base class for upstream market data failures."""
    pass


class TransportError(MarketDataError):
    """Connection failure, timeout at the HTTP layer, or a retryable HTTP status."""
    pass


class SessionError(MarketDataError):
    """Authentication or session bootstrap failed, including after one re-handshake."""
    pass


class UpstreamTimeoutError(MarketDataError):
    """A call raced against a per-call timeout and lost."""
    pass


class DataShapeError(MarketDataError):
    """Upstream response could not be interpreted."""
    pass


class PriceValidationError(MarketDataError):
    """Price history failed sanity checks."""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.errors = list(errors or [])
