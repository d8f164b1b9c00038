"""Round-trip trade reconstruction from the fill log."""

import logging
from dataclasses import dataclass
from typing import Iterable

import pandas as pd

from engine.exchange import EPSILON, Fill, OrderSide

logger = logging.getLogger(__name__)


@dataclass
class Trade:
    """A completed buy+sell round trip for one pair."""

    pair: str
    entry_price: float  # average cost of the position
    exit_price: float
    amount: float
    pnl: float  # gross, before fees
    fees: float  # entry fee share + exit fee share
    volume: float  # exit notional
    timestamp: int  # exit fill time

    @property
    def net_pnl(self) -> float:
        return self.pnl - self.fees

    @property
    def return_pct(self) -> float:
        """Gross return as a fraction of the entry notional."""
        cost = self.amount * self.entry_price
        if cost == 0:
            return 0.0
        return self.pnl / cost


@dataclass
class Position:
    amount: float = 0.0
    avg_price: float = 0.0
    fees: float = 0.0


def classify_outcome(pnl: float) -> str:
    """Classify a trade as WIN, LOSS, or BREAKEVEN on gross P&L."""
    if pnl > 0:
        return "WIN"
    if pnl < 0:
        return "LOSS"
    return "BREAKEVEN"


class PositionTracker:
    """Average-cost position per pair; sells realise trades against it.

    A sell larger than the open position only realises the covered part.
    The uncovered quantity is reported through ``oversold_amount``.
    """

    def __init__(self) -> None:
        self._positions: dict[str, Position] = {}
        self.trades: list[Trade] = []
        self.oversold_amount: float = 0.0

    def get_position(self, pair: str) -> Position:
        return self._positions.setdefault(pair, Position())

    def apply(self, fill: Fill) -> None:
        position = self.get_position(fill.pair)
        if fill.side == OrderSide.BUY:
            new_amount = position.amount + fill.amount
            position.avg_price = (
                position.avg_price * position.amount + fill.price * fill.amount
            ) / new_amount
            position.amount = new_amount
            position.fees += fill.fee
            return

        matched = min(fill.amount, position.amount)
        if fill.amount > position.amount + EPSILON:
            uncovered = fill.amount - position.amount
            self.oversold_amount += uncovered
            logger.warning(
                "Sell of %.8f %s exceeds open position %.8f; %.8f not realised",
                fill.amount, fill.pair, position.amount, uncovered,
            )
        if matched <= 0:
            return

        share = matched / position.amount
        entry_fees = position.fees * share
        exit_fees = fill.fee * (matched / fill.amount)
        self.trades.append(Trade(
            pair=fill.pair,
            entry_price=position.avg_price,
            exit_price=fill.price,
            amount=matched,
            pnl=(fill.price - position.avg_price) * matched,
            fees=entry_fees + exit_fees,
            volume=matched * fill.price,
            timestamp=fill.timestamp,
        ))

        position.amount -= matched
        position.fees -= entry_fees
        if position.amount <= EPSILON:
            self._positions[fill.pair] = Position()


def group_fills_into_trades(fills: Iterable[Fill]) -> tuple[list[Trade], float]:
    """Replay fills in order. Returns (trades, oversold_amount)."""
    tracker = PositionTracker()
    for fill in fills:
        tracker.apply(fill)
    return tracker.trades, tracker.oversold_amount


def trades_to_dataframe(trades: list[Trade]) -> pd.DataFrame:
    """Convert trades to a DataFrame, one row per round trip."""
    columns = [
        "pair", "entry_price", "exit_price", "amount", "pnl", "fees",
        "net_pnl", "return_pct", "volume", "timestamp", "exit_time", "outcome",
    ]
    if not trades:
        return pd.DataFrame(columns=columns)
    return pd.DataFrame([
        {
            "pair": t.pair,
            "entry_price": t.entry_price,
            "exit_price": t.exit_price,
            "amount": t.amount,
            "pnl": t.pnl,
            "fees": t.fees,
            "net_pnl": t.net_pnl,
            "return_pct": t.return_pct,
            "volume": t.volume,
            "timestamp": t.timestamp,
            "exit_time": pd.Timestamp(t.timestamp, unit="ms", tz="UTC"),
            "outcome": classify_outcome(t.pnl),
        }
        for t in trades
    ], columns=columns)
