"""
Helper functions for the market pattern scanner.
Retry, timeout, and small numeric utilities shared by the adapters and scanners.
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence, TypeVar, Union

import backoff
import numpy as np

from data.errors import UpstreamTimeoutError

T = TypeVar("T")

logger = logging.getLogger(__name__)


# =============================================================================
# Async Utilities
# =============================================================================

async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    exceptions: tuple = (Exception,),
) -> T:
    """
    Run an async operation with bounded exponential retry.

    The operation is attempted up to ``max_retries`` times. Between attempts
    the wait is ``base_delay * 2 ** attempt`` seconds, without jitter.

    Args:
        operation: Zero-argument coroutine function to run
        max_retries: Total number of attempts
        base_delay: Delay before the second attempt, in seconds
        exceptions: Exception types that trigger a retry

    Returns:
        The operation's result

    Raises:
        The last exception raised by the operation once attempts run out.
    """

    def _on_backoff(details: Dict[str, Any]) -> None:
        logger.debug(
            f"Retrying {getattr(operation, '__name__', 'operation')} "
            f"after attempt {details['tries']} (wait {details['wait']:.2f}s)"
        )

    @backoff.on_exception(
        backoff.expo,
        exceptions,
        max_tries=max(1, max_retries),
        factor=base_delay,
        jitter=None,
        on_backoff=_on_backoff,
        logger=None,
    )
    async def _attempt() -> T:
        return await operation()

    return await _attempt()


async def run_with_timeout(
    coro: Awaitable[T],
    timeout_seconds: float,
    label: str = "operation",
) -> T:
    """
    Run a coroutine with a timeout.

    Args:
        coro: Coroutine to run
        timeout_seconds: Timeout in seconds
        label: Name used in the timeout error message

    Returns:
        Coroutine result

    Raises:
        UpstreamTimeoutError: if the coroutine does not finish in time
    """
    try:
        return await asyncio.wait_for(coro, timeout=timeout_seconds)
    except asyncio.TimeoutError as e:
        raise UpstreamTimeoutError(f"{label} timed out after {timeout_seconds:.0f}s") from e


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    """Yield consecutive slices of ``items`` with at most ``size`` elements."""
    size = max(1, size)
    for i in range(0, len(items), size):
        yield list(items[i : i + size])


# =============================================================================
# Calculation Functions
# =============================================================================

def safe_divide(
    numerator: Union[int, float, None],
    denominator: Union[int, float, None],
    default: Optional[float] = None,
) -> Optional[float]:
    """
    Safely divide two numbers, handling zero and None.

    Args:
        numerator: Dividend
        denominator: Divisor
        default: Value to return if division fails

    Returns:
        Result or default
    """
    if numerator is None or denominator is None:
        return default

    if denominator == 0:
        return default

    try:
        return numerator / denominator
    except (TypeError, ValueError):
        return default


def median(values: Sequence[float]) -> float:
    """Median of a sequence; even counts average the two middle values. Empty gives 0."""
    if len(values) == 0:
        return 0.0
    return float(np.median(np.asarray(values, dtype=float)))


def pct_change(old_value: Optional[float], new_value: Optional[float]) -> Optional[float]:
    """Percent change from ``old_value`` to ``new_value`` (15.0 = +15%)."""
    ratio = safe_divide(new_value, old_value)
    if ratio is None:
        return None
    return (ratio - 1) * 100


def decline_from_high(high: Optional[float], price: Optional[float]) -> Optional[float]:
    """Percent decline of ``price`` below ``high`` (95.0 = 95% below)."""
    if not high or high <= 0 or price is None:
        return None
    return (high - price) / high * 100


# =============================================================================
# Data Manipulation Functions
# =============================================================================

def dict_get_nested(
    d: Any,
    path: str,
    default: Any = None,
    separator: str = ".",
) -> Any:
    """
    Get a nested value from decoded JSON using dot notation.

    List indices are written as numbers, e.g. ``"chart.result.0.timestamp"``.
    Any missing key, bad index, or unexpected type yields ``default``.
    """
    value = d

    for key in path.split(separator):
        if isinstance(value, dict) and key in value:
            value = value[key]
        elif isinstance(value, list):
            try:
                value = value[int(key)]
            except (ValueError, IndexError):
                return default
        else:
            return default

    return value


def to_float(value: Any) -> Optional[float]:
    """Coerce a loosely typed upstream value to float, or None."""
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if not np.isfinite(result):
        return None
    return result


# =============================================================================
# Date/Time Utilities
# =============================================================================

def is_weekend(reference: Optional[Union[date, datetime]] = None) -> bool:
    """True on Saturday and Sunday. Defaults to today."""
    reference = reference or datetime.now()
    return reference.weekday() >= 5
