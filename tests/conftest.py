"""
Pytest configuration and fixtures.

Shared fixtures for all tests.
"""

import pytest
import os
from pathlib import Path
import tempfile
import shutil
from datetime import datetime, timedelta, timezone

# Set test environment
os.environ["ENVIRONMENT"] = "test"

BASE_TIME = datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def temp_dir():
    """Create temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    yield temp_path
    shutil.rmtree(temp_path)


@pytest.fixture
def make_trade():
    """
    Factory for closed ledger trades.

    pips is the signed result; prices are derived so pnl_pips matches it.
    """
    from src.ledger.trades import TradeRecord

    def _make(
        agent_id="alpha",
        pips=10.0,
        direction="long",
        pair="EUR_USD",
        session="london",
        regime="trending",
        environment="live",
        created_at=None,
        minutes=0,
        status="closed",
    ):
        entry = 1.1000
        move = pips / 10000
        exit_price = entry + move if direction.lower() in ("long", "buy") else entry - move
        return TradeRecord(
            agent_id=agent_id,
            pair=pair,
            direction=direction,
            entry_price=entry,
            exit_price=exit_price,
            session_label=session,
            regime_label=regime,
            environment=environment,
            created_at=created_at or BASE_TIME + timedelta(minutes=minutes),
            status=status,
        )

    return _make


@pytest.fixture
def make_curve():
    """Factory for equity curves from per-step fractional returns."""
    def _make(returns, start=1000.0):
        curve = [start]
        for r in returns:
            curve.append(curve[-1] * (1 + r))
        return curve

    return _make


@pytest.fixture
def sample_bars():
    """Create sample bar data for testing."""
    import pandas as pd
    import numpy as np

    dates = pd.date_range(
        start=datetime(2024, 1, 1),
        periods=100,
        freq="D",
    )

    np.random.seed(42)
    prices = 100 + np.cumsum(np.random.randn(len(dates)) * 2)

    return pd.DataFrame({
        "timestamp": dates,
        "open": prices,
        "high": prices * 1.02,
        "low": prices * 0.98,
        "close": prices,
        "volume": np.random.randint(1000000, 5000000, len(dates)),
        "symbol": "TEST",
    })


@pytest.fixture
def mock_redis_client():
    """MagicMock Redis client backed by a dict (supports `with client.lock(...)`)."""
    from unittest.mock import MagicMock

    data = {}
    client = MagicMock()
    client.get.side_effect = data.get
    client.set.side_effect = lambda key, value: data.__setitem__(key, value)
    client.delete.side_effect = lambda key: data.pop(key, None)
    client.data = data
    return client
