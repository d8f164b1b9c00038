"""Shared test fixtures for the backtesting simulation core."""

import sys
from pathlib import Path

import numpy as np
import pytest

# Ensure project root is on sys.path
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from engine.exchange import SimulatedExchange
from engine.market_data import OrderBook

START_MS = 1704067200000  # 2024-01-01T00:00:00Z


def make_ticks(
    pair: str = "BTC/USD",
    n_ticks: int = 300,
    start_ms: int = START_MS,
    interval_ms: int = 2000,
    base_price: float = 40000.0,
    seed: int = 42,
) -> list[dict]:
    """Create synthetic order book ticks following a seeded random walk.

    Pattern:
    - First third: uptrend
    - Middle third: pullback
    - Last third: uptrend again
    """
    rng = np.random.default_rng(seed)
    prices = np.zeros(n_ticks)
    prices[0] = base_price
    for i in range(1, n_ticks):
        if i < n_ticks // 3:
            drift = 8.0
        elif i < 2 * n_ticks // 3:
            drift = -10.0
        else:
            drift = 8.0
        prices[i] = prices[i - 1] + drift + rng.normal(0, 5.0)

    ticks = []
    for i, mid in enumerate(prices):
        spread = 1.0 + float(rng.uniform(0, 1))
        ticks.append({
            "timestamp": start_ms + i * interval_ms,
            "pair": pair,
            "orderBook": {
                "bids": [[round(mid - spread * (k + 1), 2), 2.0 + k] for k in range(3)],
                "asks": [[round(mid + spread * (k + 1), 2), 2.0 + k] for k in range(3)],
            },
            "trades": [],
        })
    return ticks


@pytest.fixture
def order_book() -> OrderBook:
    """Two-level book around 100."""
    return OrderBook(
        bids=[[100.0, 10.0], [99.5, 15.0]],
        asks=[[100.5, 10.0], [101.0, 15.0]],
    )


@pytest.fixture
def exchange() -> SimulatedExchange:
    """Fee-free venue holding USD 10000 and 1 BTC."""
    return SimulatedExchange(
        initial_balances={"USD": 10000.0, "BTC": 1.0},
        maker_fee=0.0,
        taker_fee=0.0,
    )


@pytest.fixture
def sample_ticks() -> list[dict]:
    return make_ticks(n_ticks=50)
