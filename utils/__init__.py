"""
Utility modules for the market pattern scanner.
"""

from utils.logging import setup_logging, log_api_call, ScanPhaseLogger
from utils.helpers import (
    retry_with_backoff,
    run_with_timeout,
    chunked,
    safe_divide,
    median,
    pct_change,
    decline_from_high,
    dict_get_nested,
    is_weekend,
)

__all__ = [
    "setup_logging",
    "log_api_call",
    "ScanPhaseLogger",
    "retry_with_backoff",
    "run_with_timeout",
    "chunked",
    "safe_divide",
    "median",
    "pct_change",
    "decline_from_high",
    "dict_get_nested",
    "is_weekend",
]
