"""
Tests for the scan phase logger.
"""

import pytest
from loguru import logger

from utils.logging import ScanPhaseLogger


@pytest.fixture
def messages():
    captured = []
    sink_id = logger.add(lambda message: captured.append(message.record["message"]), level="INFO")
    yield captured
    logger.remove(sink_id)


class TestScanPhaseLogger:
    """Tests for ScanPhaseLogger."""

    def test_logs_start_and_completion_with_context(self, messages):
        with ScanPhaseLogger("deep_scan", scan="ath", candidates=12) as phase:
            pass

        assert messages[0] == "Starting ath deep_scan (candidates=12)"
        assert messages[1].startswith("ath deep_scan completed in")
        assert phase.elapsed >= 0

    def test_failure_is_logged_and_reraised(self, messages):
        with pytest.raises(RuntimeError):
            with ScanPhaseLogger("sourcing", scan="spike"):
                raise RuntimeError("screener down")

        assert messages[0] == "Starting spike sourcing"
        assert "spike sourcing failed after" in messages[1]
        assert "screener down" in messages[1]
