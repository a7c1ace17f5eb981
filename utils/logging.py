"""
Logging configuration for the market pattern scanner.
Uses loguru for structured, colored logging with optional file output.
Library modules log through the standard ``logging`` module; those records
are routed into loguru once ``setup_logging`` has run.
"""

import logging
import sys
import time
from pathlib import Path
from typing import Optional

from loguru import logger

from config.settings import get_settings


class InterceptHandler(logging.Handler):
    """Forward standard library log records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Walk back to the frame that issued the logging call
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(
    level: Optional[str] = None,
    log_file: Optional[str] = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """
    Configure logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR). Defaults to settings value.
        log_file: Path to log file. Defaults to settings value.
        rotation: When to rotate log files. Default "10 MB".
        retention: How long to keep log files. Default "7 days".
    """
    settings = get_settings()
    level = level or settings.log_level
    log_file = log_file or settings.log_file

    # Remove default handler
    logger.remove()

    console_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
        "<level>{message}</level>"
    )

    logger.add(
        sys.stderr,
        format=console_format,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=False,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_format = (
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{name}:{function}:{line} | "
            "{message}"
        )

        logger.add(
            log_path,
            format=file_format,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="gz",
            enqueue=True,  # Thread-safe
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    logger.info(f"Logging configured: level={level}, file={log_file}")


class ScanPhaseLogger:
    """
    Times one phase of a scan run and logs its start and outcome.

    Context keyword arguments (scan kind, candidate counts) are bound to every
    record. Exceptions are logged and re-raised.
    """

    def __init__(self, phase: str, **context):
        self.phase = phase
        self.label = f"{context['scan']} {phase}" if "scan" in context else phase
        self.context = {k: v for k, v in context.items() if k != "scan"}
        self.logger = logger.bind(phase=phase, **context)
        self.elapsed = 0.0
        self._started = 0.0

    def __enter__(self) -> "ScanPhaseLogger":
        self._started = time.monotonic()
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        self.logger.info(f"Starting {self.label}" + (f" ({details})" if details else ""))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> bool:
        self.elapsed = time.monotonic() - self._started
        if exc_type is not None:
            self.logger.error(f"{self.label} failed after {self.elapsed:.2f}s: {exc_val}")
        else:
            self.logger.info(f"{self.label} completed in {self.elapsed:.2f}s")
        return False


def log_api_call(
    service: str,
    endpoint: str,
    ticker: str,
    success: bool,
    duration_ms: float,
    error: Optional[str] = None,
) -> None:
    """
    Log an upstream API call with structured data.

    Args:
        service: Upstream name (e.g., "yahoo", "tradingview")
        endpoint: Endpoint or host called
        ticker: Ticker or market the call was for
        success: Whether call succeeded
        duration_ms: Call duration in milliseconds
        error: Error message if failed
    """
    log_data = {
        "service": service,
        "endpoint": endpoint,
        "ticker": ticker,
        "success": success,
        "duration_ms": round(duration_ms, 2),
    }

    if error:
        log_data["error"] = error
        logger.warning(f"API call failed: {log_data}")
    else:
        logger.debug(f"API call: {log_data}")
