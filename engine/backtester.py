"""Main backtest orchestrator: tick-by-tick loop from historical data to results."""

import json
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Optional

from config import Config, _build_nested, ms_to_iso, to_epoch_ms
from engine.clock import ClockView, SimulatedClock
from engine.errors import ConfigurationError
from engine.events import Event, EventLog, EventType
from engine.exchange import Fill, SimulatedExchange
from engine.market_data import HistoricalDataProvider, HistoricalTick
from engine.metrics import PerformanceMetrics, analyze
from strategy.base import Strategy

logger = logging.getLogger(__name__)


class EngineState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"


def _json_safe(value: Any) -> Any:
    """Replace non-finite floats with ``"inf"``, ``"-inf"`` or ``"nan"``."""
    if isinstance(value, float) and not math.isfinite(value):
        if math.isnan(value):
            return "nan"
        return "inf" if value > 0 else "-inf"
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


@dataclass(frozen=True)
class BacktestProgress:
    timestamp: int
    tick_count: int
    progress_pct: float


@dataclass(frozen=True)
class BacktestResult:
    """Complete output of a backtest run."""
    config: Config
    metrics: PerformanceMetrics
    fills: tuple[Fill, ...]
    initial_balances: dict[str, float]
    final_balances: dict[str, float]
    start_prices: dict[str, float]
    end_prices: dict[str, float]
    duration: int  # wall-clock ms spent running
    tick_count: int = 0
    events: tuple[Event, ...] = field(default_factory=tuple)

    def report(self) -> str:
        from reporting.summary import format_report
        return format_report(self.metrics)

    def to_dict(self) -> dict[str, Any]:
        """Plain structure suitable for JSON export."""
        bt = self.config.backtest
        return {
            "config": {
                "start_date": ms_to_iso(to_epoch_ms(bt.start_date)),
                "end_date": ms_to_iso(to_epoch_ms(bt.end_date)),
                "initial_balances": dict(bt.initial_balances),
                "pairs": list(bt.pairs),
                "tick_interval_ms": bt.tick_interval_ms,
                "exchange": {
                    "maker_fee": self.config.exchange.maker_fee,
                    "taker_fee": self.config.exchange.taker_fee,
                    "slippage_model": self.config.exchange.slippage_model,
                    "fixed_slippage_bps": self.config.exchange.fixed_slippage_bps,
                    "maker_fills_for_resting_orders":
                        self.config.exchange.maker_fills_for_resting_orders,
                },
            },
            "metrics": self.metrics.to_dict(),
            "fills": [f.to_dict() for f in self.fills],
            "initial_balances": dict(self.initial_balances),
            "final_balances": dict(self.final_balances),
            "start_prices": dict(self.start_prices),
            "end_prices": dict(self.end_prices),
            "duration": self.duration,
            "tick_count": self.tick_count,
            "events": [e.to_dict() for e in self.events],
        }

    def to_json(self, path: Optional[str | Path] = None, indent: int = 2) -> str:
        """Serialize to JSON, optionally writing it to ``path``."""
        text = json.dumps(_json_safe(self.to_dict()), indent=indent, allow_nan=False)
        if path is not None:
            Path(path).write_text(text, encoding="utf-8")
        return text

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "BacktestResult":
        cfg_raw = raw.get("config", {})
        config = Config()
        config.backtest.start_date = cfg_raw.get("start_date", config.backtest.start_date)
        config.backtest.end_date = cfg_raw.get("end_date", config.backtest.end_date)
        config.backtest.initial_balances = dict(
            cfg_raw.get("initial_balances", config.backtest.initial_balances)
        )
        config.backtest.pairs = list(cfg_raw.get("pairs", []))
        config.backtest.tick_interval_ms = cfg_raw.get(
            "tick_interval_ms", config.backtest.tick_interval_ms
        )
        if "exchange" in cfg_raw:
            config.exchange = _build_nested(type(config.exchange), cfg_raw["exchange"])
        return cls(
            config=config,
            metrics=PerformanceMetrics.from_dict(raw["metrics"]),
            fills=tuple(Fill.from_dict(f) for f in raw.get("fills", [])),
            initial_balances=dict(raw.get("initial_balances", {})),
            final_balances=dict(raw.get("final_balances", {})),
            start_prices=dict(raw.get("start_prices", {})),
            end_prices=dict(raw.get("end_prices", {})),
            duration=int(raw.get("duration", 0)),
            tick_count=int(raw.get("tick_count", 0)),
            events=tuple(Event.from_dict(e) for e in raw.get("events", [])),
        )

    @classmethod
    def from_json(cls, text: str) -> "BacktestResult":
        return cls.from_dict(json.loads(text))


class BacktestingEngine:
    """Owns the clock, data and venue for one run; drives the strategy."""

    def __init__(
        self,
        config: Config,
        on_tick: Optional[Callable[[BacktestProgress], Any]] = None,
        on_complete: Optional[Callable[[BacktestResult], Any]] = None,
    ) -> None:
        self._config = config
        bt = config.backtest
        self.start_time = to_epoch_ms(bt.start_date)
        self.end_time = to_epoch_ms(bt.end_date)
        self._on_tick = on_tick
        self._on_complete = on_complete

        self.event_log = EventLog()
        self.clock = SimulatedClock(tick_interval_ms=bt.tick_interval_ms)
        self.data_provider = HistoricalDataProvider()
        self.exchange = SimulatedExchange.from_config(
            config.exchange, bt.initial_balances, event_log=self.event_log
        )

        self.state = EngineState.IDLE
        self.strategy: Optional[Strategy] = None
        self.tick_count = 0
        self._stop_requested = False

    @property
    def config(self) -> Config:
        return self._config

    @property
    def pairs(self) -> list[str]:
        return list(self._config.backtest.pairs) or self.data_provider.get_pairs()

    def load_data(
        self,
        pair: Optional[str] = None,
        ticks: Any = None,
        path: Optional[str | Path] = None,
    ) -> int:
        """Load ticks for one pair from memory, or from a JSON/CSV/parquet file."""
        if ticks is not None:
            if pair is None:
                raise ValueError("pair is required when loading ticks from memory")
            return self.data_provider.load_from_source(pair, ticks)
        if path is not None:
            from data.loader import load_into_provider
            return load_into_provider(self.data_provider, path, pair=pair)
        raise ValueError("Must specify a data source (ticks or path)")

    def load_configured_data(self) -> int:
        """Load every instrument listed under ``data.instruments`` in the config."""
        from data.loader import load_into_provider
        total = 0
        for pair, instrument in self._config.data.instruments.items():
            total += load_into_provider(
                self.data_provider, instrument.file, pair=pair, fmt=instrument.format or None
            )
        return total

    def set_strategy(self, strategy: Strategy) -> None:
        """Attach the strategy and inject the exchange and a read-only clock."""
        self.strategy = strategy
        strategy.set_exchange(self.exchange)
        strategy.set_clock(ClockView(self.clock))

    # ------------------------------------------------------------------
    # Run loop
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        if self.strategy is None:
            raise ConfigurationError("No strategy set. Call set_strategy() first.")
        if not self.data_provider.get_pairs():
            raise ConfigurationError("No historical data loaded. Call load_data() first.")
        if self.end_time <= self.start_time:
            raise ConfigurationError(
                f"end_date ({self.end_time}) must be after start_date ({self.start_time})"
            )
        if self._config.backtest.tick_interval_ms <= 0:
            raise ConfigurationError("tick_interval_ms must be positive")
        if self.state != EngineState.IDLE:
            raise ConfigurationError(
                f"Engine is {self.state.value}; call reset() before running again"
            )

    def run(self) -> BacktestResult:
        """Execute the full backtest."""
        self._validate()
        bt = self._config.backtest
        pairs = self.pairs

        self.state = EngineState.RUNNING
        self._stop_requested = False
        self.tick_count = 0
        wall_start = time.monotonic()

        self.clock.set_time(self.start_time)
        self.strategy.initialize()

        logger.info(
            "Starting backtest from %s to %s, pairs=%s, tick interval=%dms",
            ms_to_iso(self.start_time), ms_to_iso(self.end_time),
            ", ".join(pairs), bt.tick_interval_ms,
        )
        self.event_log.emit(EventType.RUN_STARTED, self.start_time, pairs=pairs)

        while self.clock.now() < self.end_time:
            if self._stop_requested:
                self.event_log.emit(EventType.RUN_STOPPED, self.clock.now())
                logger.info("Backtest stopped at %s", self.clock.to_iso())
                break

            self._process_tick(pairs)

            self.clock.advance(bt.tick_interval_ms)
            self.tick_count += 1

            if self._on_tick is not None:
                self._on_tick(self._progress())

            self._wait_while_paused(bt.pause_poll_interval_s)

        start_prices = self.get_current_prices(self.start_time, pairs)
        end_prices = self.get_current_prices(self.end_time, pairs)

        self.strategy.finalize()

        initial_balances = self.exchange.initial_balances
        final_balances = self.exchange.get_all_balances()
        fills = self.exchange.get_all_fills()
        analysis = self._config.analysis
        metrics = analyze(
            fills=fills,
            initial_balances=initial_balances,
            final_balances=final_balances,
            start_time=self.start_time,
            end_time=self.end_time,
            start_prices=start_prices,
            end_prices=end_prices,
            risk_free_rate=analysis.risk_free_rate,
            quote_assets=analysis.quote_assets,
            days_per_year=analysis.days_per_year,
        )

        duration = int((time.monotonic() - wall_start) * 1000)
        self.state = EngineState.COMPLETED
        self.event_log.emit(
            EventType.RUN_COMPLETED, self.clock.now(),
            tick_count=self.tick_count, fills=len(fills),
        )
        logger.info(
            "Backtest completed in %.2fs, processed %d ticks, %d fills",
            duration / 1000, self.tick_count, len(fills),
        )

        result = BacktestResult(
            config=self._config,
            metrics=metrics,
            fills=tuple(fills),
            initial_balances=initial_balances,
            final_balances=final_balances,
            start_prices=start_prices,
            end_prices=end_prices,
            duration=duration,
            tick_count=self.tick_count,
            events=tuple(self.event_log.get_events()),
        )

        if self._on_complete is not None:
            self._on_complete(result)
        return result

    def _process_tick(self, pairs: list[str]) -> None:
        """Snapshot data, run the strategy, then match every open order."""
        now = self.clock.now()

        data_by_pair: dict[str, HistoricalTick] = {}
        for pair in pairs:
            tick = self.data_provider.get_tick_at(pair, now)
            if tick is None:
                logger.debug("Data gap for %s at %d; skipping pair", pair, now)
                self.event_log.emit(EventType.DATA_GAP, now, pair=pair)
                continue
            data_by_pair[pair] = tick

        self.strategy.update_market_data(data_by_pair)
        self.strategy.tick(now, data_by_pair)

        for order in self.exchange.get_open_orders():
            tick = data_by_pair.get(order.pair)
            if tick is None:
                continue
            self.exchange.process_order_matching(order.id, tick.order_book, now)

    def _wait_while_paused(self, poll_interval_s: float) -> None:
        while self.state == EngineState.PAUSED and not self._stop_requested:
            time.sleep(poll_interval_s)

    def _progress(self) -> BacktestProgress:
        span = self.end_time - self.start_time
        pct = (self.clock.now() - self.start_time) / span * 100 if span > 0 else 0.0
        return BacktestProgress(
            timestamp=self.clock.now(),
            tick_count=self.tick_count,
            progress_pct=round(min(pct, 100.0), 2),
        )

    def get_current_prices(
        self, timestamp: int, pairs: Optional[list[str]] = None
    ) -> dict[str, float]:
        """Mid price per pair from the tick at or before ``timestamp``."""
        prices: dict[str, float] = {}
        for pair in pairs if pairs is not None else self.pairs:
            tick = self.data_provider.get_tick_at(pair, timestamp)
            if tick is None:
                continue
            prices[pair] = tick.order_book.mid_price or 0.0
        return prices

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def pause(self) -> None:
        if self.state == EngineState.RUNNING:
            self.state = EngineState.PAUSED
            self.event_log.emit(EventType.RUN_PAUSED, self.clock.now())

    def resume(self) -> None:
        if self.state == EngineState.PAUSED:
            self.state = EngineState.RUNNING
            self.event_log.emit(EventType.RUN_RESUMED, self.clock.now())

    def stop(self) -> None:
        """Request cooperative cancellation; honoured at the next tick boundary."""
        self._stop_requested = True
        if self.state == EngineState.PAUSED:
            self.state = EngineState.RUNNING

    @property
    def is_running(self) -> bool:
        return self.state in (EngineState.RUNNING, EngineState.PAUSED)

    def get_progress(self) -> dict[str, Any]:
        if not self.is_running:
            return {"progress_pct": 0.0, "tick_count": self.tick_count,
                    "current_time": None, "state": self.state.value}
        progress = self._progress()
        return {
            "progress_pct": progress.progress_pct,
            "tick_count": progress.tick_count,
            "current_time": progress.timestamp,
            "state": self.state.value,
        }

    def get_exchange_stats(self) -> dict[str, Any]:
        return self.exchange.get_stats()

    def reset(self) -> None:
        """Return to IDLE with fresh clock, venue and cursors; data stays loaded."""
        self.clock.reset()
        self.exchange.reset(self._config.backtest.initial_balances)
        self.data_provider.reset()
        self.event_log.clear()
        self.state = EngineState.IDLE
        self.tick_count = 0
        self._stop_requested = False
        if self.strategy is not None:
            self.strategy.set_clock(ClockView(self.clock))


def run_backtest(
    config: Config,
    strategy: Strategy,
    ticks_by_pair: dict[str, Any],
) -> BacktestResult:
    """Convenience entry point.

    Usage:
        from config import load_config
        from data.loader import load_ticks_json
        from engine.backtester import run_backtest
        from strategy.ma_crossover import MovingAverageCrossoverStrategy

        config = load_config()
        ticks = {"BTC/USD": load_ticks_json("data/btc_usd.json")}
        strategy = MovingAverageCrossoverStrategy("BTC/USD")
        result = run_backtest(config, strategy, ticks)
    """
    engine = BacktestingEngine(config)
    for pair, ticks in ticks_by_pair.items():
        engine.load_data(pair=pair, ticks=ticks)
    engine.set_strategy(strategy)
    return engine.run()
