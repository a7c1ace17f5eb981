"""
Shared fixtures: bar factories and network-free settings.
"""

from datetime import date, timedelta
from typing import List, Optional, Sequence

import pandas as pd
import pytest

from config.settings import Settings
from data.models import PriceBar


def bars_from_closes(
    closes: Sequence[float],
    start: date = date(2020, 1, 1),
    spread: float = 0.0,
    business_days: bool = False,
) -> List[PriceBar]:
    """Bars with open = close and high/low ``spread`` (fraction) around the close."""
    if business_days:
        dates = [ts.date() for ts in pd.bdate_range(start, periods=len(closes))]
    else:
        dates = [start + timedelta(days=i) for i in range(len(closes))]
    return [
        PriceBar(
            date=d,
            open=float(c),
            high=float(c) * (1 + spread),
            low=float(c) * (1 - spread),
            close=float(c),
            volume=1000,
        )
        for d, c in zip(dates, closes)
    ]


@pytest.fixture
def make_bars():
    return bars_from_closes


@pytest.fixture
def settings() -> Settings:
    """Settings with instant retries and no .env lookups."""
    return Settings(
        _env_file=None,
        retry_attempts=3,
        retry_base_delay=0.0,
        screener_page_size=1500,
        screener_max_per_market=5000,
        history_timeout_seconds=5.0,
        alpha_vantage_api_key="test-key",
        alpha_vantage_daily_limit=2,
    )
