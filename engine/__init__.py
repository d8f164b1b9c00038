"""Backtest engine: simulated clock, historical data, matching venue, and analytics."""

from engine.backtester import (
    BacktestingEngine,
    BacktestProgress,
    BacktestResult,
    EngineState,
    run_backtest,
)
from engine.clock import ClockMode, ClockView, RealClock, SimulatedClock, create_clock
from engine.errors import (
    BacktestError,
    ConfigurationError,
    DataGapError,
    InsufficientBalanceError,
    InvalidModeError,
    ListenerError,
)
from engine.events import EventLog, EventType
from engine.exchange import Fill, Order, OrderSide, OrderStatus, OrderType, SimulatedExchange
from engine.market_data import HistoricalDataProvider, HistoricalTick, OrderBook
from engine.metrics import PerformanceMetrics, analyze
from engine.trade_log import Trade, group_fills_into_trades

__all__ = [
    "BacktestingEngine",
    "BacktestProgress",
    "BacktestResult",
    "EngineState",
    "run_backtest",
    "ClockMode",
    "ClockView",
    "RealClock",
    "SimulatedClock",
    "create_clock",
    "BacktestError",
    "ConfigurationError",
    "DataGapError",
    "InsufficientBalanceError",
    "InvalidModeError",
    "ListenerError",
    "EventLog",
    "EventType",
    "Fill",
    "Order",
    "OrderSide",
    "OrderStatus",
    "OrderType",
    "SimulatedExchange",
    "HistoricalDataProvider",
    "HistoricalTick",
    "OrderBook",
    "PerformanceMetrics",
    "analyze",
    "Trade",
    "group_fills_into_trades",
]
