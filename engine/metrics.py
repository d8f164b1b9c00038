"""Performance analytics for backtest results.

Everything here is a pure function of the fill log, the balances before and
after the run, and reference prices. Fills are grouped into round-trip trades
by ``engine.trade_log``; ratios are computed on per-trade returns.
"""

import logging
import math
from dataclasses import asdict, dataclass, fields
from typing import Any, Iterable, Mapping, Optional

import numpy as np

from engine.exchange import Fill
from engine.trade_log import Trade, group_fills_into_trades

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000
DEFAULT_QUOTE_ASSETS = ("USD", "USDT", "USDC")
DEFAULT_RISK_FREE_RATE = 0.02
# JSON has no literal for infinities; exports write these strings instead.
NON_FINITE_TOKENS = ("inf", "-inf", "nan")


@dataclass
class PerformanceMetrics:
    """Complete performance metrics from a backtest run."""

    # Trades
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    breakeven_trades: int = 0

    # P&L
    total_pnl: float = 0.0
    gross_profit: float = 0.0
    gross_loss: float = 0.0
    net_pnl: float = 0.0

    # Returns
    return_pct: float = 0.0
    annualized_return_pct: float = 0.0

    # Risk
    max_drawdown: float = 0.0
    max_drawdown_pct: float = 0.0
    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0

    # Volume
    total_volume: float = 0.0
    total_fees: float = 0.0

    # Trade quality
    win_rate_pct: float = 0.0
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    largest_win: float = 0.0
    largest_loss: float = 0.0

    # Benchmark
    buy_and_hold_return_pct: float = 0.0
    excess_return_pct: float = 0.0

    # Portfolio
    initial_value: float = 0.0
    final_value: float = 0.0
    oversold_amount: float = 0.0

    # Time
    start_time: Optional[int] = None
    end_time: Optional[int] = None
    duration: int = 0  # ms

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PerformanceMetrics":
        """Inverse of ``to_dict``; also accepts ``"inf"``, ``"-inf"`` and ``"nan"`` strings."""
        known = {f.name for f in fields(cls)}
        return cls(**{
            k: float(v) if v in NON_FINITE_TOKENS else v
            for k, v in raw.items() if k in known
        })


def _price_for_asset(
    asset: str,
    prices: Mapping[str, float],
    quote_assets: Iterable[str],
) -> Optional[float]:
    for quote in quote_assets:
        price = prices.get(f"{asset}/{quote}")
        if price:
            return float(price)
    return None


def calculate_portfolio_value(
    balances: Mapping[str, float],
    prices: Mapping[str, float],
    quote_assets: Iterable[str] = DEFAULT_QUOTE_ASSETS,
) -> float:
    """Quote-currency balances at face value plus ``amount * price`` for the rest."""
    quote_assets = tuple(quote_assets)
    value = 0.0
    for asset, amount in balances.items():
        if asset in quote_assets:
            value += amount
            continue
        price = _price_for_asset(asset, prices, quote_assets)
        if price is None:
            if amount:
                logger.warning("No price for %s; valuing %.8f units at 0", asset, amount)
            continue
        value += amount * price
    return value


def compute_drawdown(trades: list[Trade], initial_value: float) -> tuple[float, float]:
    """Max peak-to-trough decline of the equity curve built from net trade P&L.

    Returns: (max_drawdown, max_drawdown_pct)
    """
    if not trades:
        return 0.0, 0.0
    net = np.array([t.net_pnl for t in trades], dtype=np.float64)
    equity = initial_value + np.concatenate(([0.0], np.cumsum(net)))
    peak = np.maximum.accumulate(equity)
    dd = peak - equity
    dd_pct = np.divide(dd, peak, out=np.zeros_like(dd), where=peak > 0) * 100
    return float(dd.max()), float(dd_pct.max())


def _trade_returns(trades: list[Trade]) -> np.ndarray:
    return np.array([t.return_pct for t in trades], dtype=np.float64)


def _trades_per_year(n_trades: int, duration_ms: float, days_per_year: float) -> float:
    return n_trades / duration_ms * (days_per_year * MS_PER_DAY)


def compute_sharpe(
    trades: list[Trade],
    duration_ms: float,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    days_per_year: float = 365.0,
) -> float:
    """Annualized Sharpe ratio over per-trade returns (population std)."""
    if len(trades) < 2 or duration_ms <= 0:
        return 0.0
    returns = _trade_returns(trades)
    std = float(np.std(returns))
    if std == 0:
        return 0.0

    per_year = _trades_per_year(len(trades), duration_ms, days_per_year)
    annual_return = float(np.mean(returns)) * per_year
    annual_std = std * math.sqrt(per_year)
    return (annual_return - risk_free_rate) / annual_std


def compute_sortino(
    trades: list[Trade],
    duration_ms: float,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    days_per_year: float = 365.0,
) -> float:
    """Annualized Sortino ratio; infinite when no trade lost money."""
    if not trades:
        return 0.0
    returns = _trade_returns(trades)
    downside = returns[returns < 0]
    if len(downside) == 0:
        return math.inf
    if len(trades) < 2 or duration_ms <= 0:
        return 0.0

    downside_std = float(np.sqrt(np.mean(downside ** 2)))
    if downside_std == 0:
        return 0.0

    per_year = _trades_per_year(len(trades), duration_ms, days_per_year)
    annual_return = float(np.mean(returns)) * per_year
    annual_downside = downside_std * math.sqrt(per_year)
    return (annual_return - risk_free_rate) / annual_downside


def compute_annualized_return(
    initial_value: float,
    final_value: float,
    duration_ms: float,
    days_per_year: float = 365.0,
) -> float:
    """``((final / initial) ** (1 / years) - 1) * 100``."""
    if initial_value <= 0 or duration_ms <= 0:
        return 0.0
    if final_value <= 0:
        return -100.0
    years = duration_ms / (days_per_year * MS_PER_DAY)
    try:
        return ((final_value / initial_value) ** (1 / years) - 1) * 100
    except OverflowError:
        return math.inf


def compute_buy_and_hold_return(
    initial_balances: Mapping[str, float],
    start_prices: Mapping[str, float],
    end_prices: Mapping[str, float],
    quote_assets: Iterable[str] = DEFAULT_QUOTE_ASSETS,
) -> float:
    """Return of simply holding the initial balances from start to end prices."""
    quote_assets = tuple(quote_assets)
    start_value = calculate_portfolio_value(initial_balances, start_prices, quote_assets)
    end_value = calculate_portfolio_value(initial_balances, end_prices, quote_assets)
    if start_value == 0:
        return 0.0
    return (end_value - start_value) / start_value * 100


def compute_trade_stats(trades: list[Trade]) -> dict[str, Any]:
    """Win/loss counts, P&L sums and trade quality from realised trades."""
    pnl = np.array([t.pnl for t in trades], dtype=np.float64)
    wins = pnl[pnl > 0]
    losses = pnl[pnl < 0]

    gross_profit = float(wins.sum()) if len(wins) else 0.0
    gross_loss = float(abs(losses.sum())) if len(losses) else 0.0
    total = len(trades)

    if gross_loss > 0:
        profit_factor = gross_profit / gross_loss
    else:
        profit_factor = math.inf if gross_profit > 0 else 0.0

    total_pnl = float(pnl.sum()) if total else 0.0
    total_fees = float(sum(t.fees for t in trades))

    return {
        "total_trades": total,
        "winning_trades": len(wins),
        "losing_trades": len(losses),
        "breakeven_trades": total - len(wins) - len(losses),
        "total_pnl": total_pnl,
        "gross_profit": gross_profit,
        "gross_loss": gross_loss,
        "net_pnl": total_pnl - total_fees,
        "total_volume": float(sum(t.volume for t in trades)),
        "total_fees": total_fees,
        "win_rate_pct": len(wins) / total * 100 if total > 0 else 0.0,
        "profit_factor": profit_factor,
        "average_win": gross_profit / len(wins) if len(wins) else 0.0,
        "average_loss": gross_loss / len(losses) if len(losses) else 0.0,
        "largest_win": float(max(wins.max(), 0.0)) if len(wins) else 0.0,
        "largest_loss": float(min(losses.min(), 0.0)) if len(losses) else 0.0,
    }


def analyze(
    fills: list[Fill],
    initial_balances: Mapping[str, float],
    final_balances: Mapping[str, float],
    start_time: int,
    end_time: int,
    start_prices: Optional[Mapping[str, float]] = None,
    end_prices: Optional[Mapping[str, float]] = None,
    risk_free_rate: float = DEFAULT_RISK_FREE_RATE,
    quote_assets: Iterable[str] = DEFAULT_QUOTE_ASSETS,
    days_per_year: float = 365.0,
) -> PerformanceMetrics:
    """Compute all performance metrics.

    Args:
        fills: Venue fill log in chronological order.
        initial_balances: Balances before the run.
        final_balances: Balances after the run.
        start_time: Run start, epoch ms.
        end_time: Run end, epoch ms.
        start_prices: ``{"BASE/QUOTE": price}`` at start, for valuation.
        end_prices: ``{"BASE/QUOTE": price}`` at end, for valuation.
        risk_free_rate: Annual rate subtracted in Sharpe/Sortino.
        quote_assets: Assets valued at face value.
        days_per_year: For annualization.
    """
    start_prices = start_prices or {}
    end_prices = end_prices or {}
    quote_assets = tuple(quote_assets)
    duration = end_time - start_time

    trades, oversold = group_fills_into_trades(fills)
    stats = compute_trade_stats(trades)

    initial_value = calculate_portfolio_value(initial_balances, start_prices, quote_assets)
    final_value = calculate_portfolio_value(final_balances, end_prices, quote_assets)

    if initial_value > 0:
        return_pct = (final_value - initial_value) / initial_value * 100
        annualized = compute_annualized_return(
            initial_value, final_value, duration, days_per_year
        )
    else:
        return_pct = 0.0
        annualized = 0.0

    max_dd, max_dd_pct = compute_drawdown(trades, initial_value)
    buy_and_hold = compute_buy_and_hold_return(
        initial_balances, start_prices, end_prices, quote_assets
    )

    return PerformanceMetrics(
        **stats,
        return_pct=return_pct,
        annualized_return_pct=annualized,
        max_drawdown=max_dd,
        max_drawdown_pct=max_dd_pct,
        sharpe_ratio=compute_sharpe(trades, duration, risk_free_rate, days_per_year),
        sortino_ratio=compute_sortino(trades, duration, risk_free_rate, days_per_year),
        buy_and_hold_return_pct=buy_and_hold,
        excess_return_pct=return_pct - buy_and_hold,
        initial_value=initial_value,
        final_value=final_value,
        oversold_amount=oversold,
        start_time=start_time,
        end_time=end_time,
        duration=duration,
    )
