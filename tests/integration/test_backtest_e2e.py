"""End-to-end integration tests for the backtest orchestrator.

Runs the full pipeline (HistoricalDataProvider -> Strategy -> SimulatedExchange
-> PerformanceAnalyzer) on synthetic order book ticks and verifies output
types, determinism, lifecycle control and balance conservation.
"""

import json
import sys
import threading
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from config import BacktestConfig, Config, InstrumentConfig
from engine.backtester import (
    BacktestingEngine,
    BacktestProgress,
    BacktestResult,
    EngineState,
    run_backtest,
)
from engine.clock import ClockView
from engine.errors import ConfigurationError
from engine.events import EventType
from engine.exchange import OrderSide, OrderType
from engine.metrics import PerformanceMetrics
from strategy.base import Strategy
from strategy.ma_crossover import MovingAverageCrossoverStrategy
from tests.conftest import START_MS, make_ticks

N_TICKS = 300
INTERVAL = 2000
END_MS = START_MS + N_TICKS * INTERVAL


class ScriptedStrategy(Strategy):
    """Buys every ``every`` ticks and sells half a cycle later."""

    def __init__(self, pair: str = "BTC/USD", every: int = 20, amount: float = 0.05):
        super().__init__()
        self.pair = pair
        self.every = every
        self.amount = amount
        self.timestamps: list[int] = []
        self.initialized = 0
        self.finalized = 0
        self.market_updates = 0

    def initialize(self):
        self.initialized += 1
        self.timestamps = []

    def update_market_data(self, data_by_pair):
        self.market_updates += 1

    def tick(self, timestamp, data_by_pair):
        n = len(self.timestamps)
        self.timestamps.append(timestamp)
        if self.pair not in data_by_pair:
            return
        if n % self.every == 0:
            self.exchange.place_order(
                self.pair, OrderSide.BUY, OrderType.MARKET, self.amount, timestamp
            )
        elif n % self.every == self.every // 2:
            held = self.exchange.get_balance(self.pair.split("/")[0])
            if held > 0:
                self.exchange.place_order(
                    self.pair, OrderSide.SELL, OrderType.MARKET,
                    min(self.amount, held), timestamp,
                )

    def finalize(self):
        self.finalized += 1


def make_config(**overrides) -> Config:
    backtest = BacktestConfig(
        start_date=START_MS,
        end_date=END_MS,
        initial_balances={"USD": 10000.0},
        pairs=["BTC/USD"],
        tick_interval_ms=INTERVAL,
        pause_poll_interval_s=0.01,
    )
    for key, value in overrides.items():
        setattr(backtest, key, value)
    return Config(backtest=backtest)


def make_engine(strategy=None, config=None, **kwargs) -> BacktestingEngine:
    engine = BacktestingEngine(config or make_config(), **kwargs)
    engine.load_data(pair="BTC/USD", ticks=make_ticks(n_ticks=N_TICKS))
    engine.set_strategy(strategy or ScriptedStrategy())
    return engine


# ---------------------------------------------------------------------------
# 1. Output shape
# ---------------------------------------------------------------------------

class TestBacktestOutput:

    def test_returns_result(self):
        engine = make_engine()
        result = engine.run()

        assert isinstance(result, BacktestResult)
        assert isinstance(result.metrics, PerformanceMetrics)
        assert result.tick_count == N_TICKS
        assert engine.state == EngineState.COMPLETED
        assert result.metrics.start_time == START_MS
        assert result.metrics.end_time == END_MS
        assert result.initial_balances == {"USD": 10000.0}

    def test_round_trips_produce_trades(self):
        result = make_engine().run()
        assert len(result.fills) > 0
        assert result.metrics.total_trades == N_TICKS // 20
        assert result.metrics.total_fees > 0
        assert result.metrics.oversold_amount == 0.0

    def test_start_and_end_prices_are_mids(self):
        result = make_engine().run()
        ticks = make_ticks(n_ticks=N_TICKS)
        first = ticks[0]["orderBook"]
        last = ticks[-1]["orderBook"]
        assert result.start_prices["BTC/USD"] == pytest.approx(
            (first["bids"][0][0] + first["asks"][0][0]) / 2
        )
        assert result.end_prices["BTC/USD"] == pytest.approx(
            (last["bids"][0][0] + last["asks"][0][0]) / 2
        )

    def test_market_orders_fill_on_the_same_tick(self):
        result = make_engine().run()
        assert result.fills[0].timestamp == START_MS
        assert result.fills[0].side == OrderSide.BUY

    def test_event_trail(self):
        result = make_engine().run()
        types = [e.type for e in result.events]
        assert types[0] == EventType.RUN_STARTED
        assert types[-1] == EventType.RUN_COMPLETED
        assert types.count(EventType.ORDER_FILLED) == len(result.fills)


# ---------------------------------------------------------------------------
# 2. Determinism and serialization
# ---------------------------------------------------------------------------

class TestDeterminism:

    def test_same_inputs_same_outputs(self):
        a = make_engine().run().to_dict()
        b = make_engine().run().to_dict()
        a.pop("duration")
        b.pop("duration")
        assert a == b

    def test_reset_and_rerun(self):
        engine = make_engine()
        first = engine.run()
        engine.reset()
        assert engine.state == EngineState.IDLE
        second = engine.run()
        assert second.fills == first.fills
        assert second.final_balances == first.final_balances

    def test_second_run_without_reset_rejected(self):
        engine = make_engine()
        engine.run()
        with pytest.raises(ConfigurationError):
            engine.run()

    def test_json_round_trip(self, tmp_path):
        result = make_engine().run()
        path = tmp_path / "result.json"
        text = result.to_json(path)
        assert json.loads(path.read_text()) == json.loads(text)

        restored = BacktestResult.from_json(text)
        assert restored.metrics.total_pnl == pytest.approx(result.metrics.total_pnl, abs=1e-9)
        assert len(restored.fills) == len(result.fills)
        assert restored.final_balances == pytest.approx(result.final_balances, abs=1e-9)
        assert restored.initial_balances == result.initial_balances
        assert restored.fills == result.fills

    def test_dict_has_iso_dates(self):
        raw = make_engine().run().to_dict()
        assert raw["config"]["start_date"] == "2024-01-01T00:00:00+00:00"
        assert raw["config"]["end_date"].startswith("2024-01-01T00:10:00")


# ---------------------------------------------------------------------------
# 3. Balance conservation
# ---------------------------------------------------------------------------

class TestBalanceConservation:

    def test_final_balances_match_fill_ledger(self):
        result = make_engine().run()
        usd = result.initial_balances["USD"]
        btc = 0.0
        for fill in result.fills:
            if fill.side == OrderSide.BUY:
                usd -= fill.value + fill.fee
                btc += fill.amount
            else:
                usd += fill.value - fill.fee
                btc -= fill.amount
        assert result.final_balances["USD"] == pytest.approx(usd)
        assert result.final_balances.get("BTC", 0.0) == pytest.approx(btc)
        assert all(v >= 0 for v in result.final_balances.values())

    def test_ma_crossover_never_goes_negative(self):
        result = make_engine(MovingAverageCrossoverStrategy()).run()
        assert all(v >= 0 for v in result.final_balances.values())
        assert result.metrics.oversold_amount == 0.0


# ---------------------------------------------------------------------------
# 4. Strategy contract
# ---------------------------------------------------------------------------

class TestStrategyContract:

    def test_hooks_and_time_steps(self):
        strategy = ScriptedStrategy()
        make_engine(strategy).run()
        assert strategy.initialized == 1
        assert strategy.finalized == 1
        assert strategy.market_updates == N_TICKS
        assert strategy.timestamps[0] == START_MS
        steps = {b - a for a, b in zip(strategy.timestamps, strategy.timestamps[1:])}
        assert steps == {INTERVAL}

    def test_clock_view_injected(self):
        strategy = ScriptedStrategy()
        make_engine(strategy)
        assert isinstance(strategy.clock, ClockView)
        assert not hasattr(strategy.clock, "advance")

    def test_data_gap_skips_pair(self):
        engine = BacktestingEngine(make_config())
        late = make_ticks(n_ticks=N_TICKS, start_ms=START_MS + 10_000)
        engine.load_data(pair="BTC/USD", ticks=late)
        engine.set_strategy(ScriptedStrategy(every=1000))
        result = engine.run()

        gaps = [e for e in result.events if e.type == EventType.DATA_GAP]
        assert len(gaps) == 5
        assert gaps[0].details == {"pair": "BTC/USD"}
        assert result.fills == ()


# ---------------------------------------------------------------------------
# 5. Lifecycle control
# ---------------------------------------------------------------------------

class TestLifecycle:

    def test_progress_callback(self):
        seen: list[BacktestProgress] = []
        result = make_engine(on_tick=seen.append).run()
        assert len(seen) == result.tick_count
        assert seen[0].tick_count == 1
        assert seen[-1].progress_pct == pytest.approx(100.0)
        assert all(a.timestamp < b.timestamp for a, b in zip(seen, seen[1:]))

    def test_on_complete_called(self):
        received = []
        result = make_engine(on_complete=received.append).run()
        assert received == [result]

    def test_stop(self):
        def on_tick(progress):
            if progress.tick_count == 10:
                engine.stop()

        engine = make_engine(on_tick=on_tick)
        result = engine.run()
        assert result.tick_count == 10
        assert any(e.type == EventType.RUN_STOPPED for e in result.events)
        assert engine.state == EngineState.COMPLETED

    def test_pause_and_resume(self):
        states = []

        def on_tick(progress):
            if progress.tick_count == 5:
                engine.pause()
                states.append(engine.get_progress()["state"])
                threading.Timer(0.05, engine.resume).start()

        engine = make_engine(on_tick=on_tick)
        result = engine.run()
        types = [e.type for e in result.events]
        assert states == ["PAUSED"]
        assert EventType.RUN_PAUSED in types
        assert EventType.RUN_RESUMED in types
        assert result.tick_count == N_TICKS

    def test_progress_when_idle(self):
        engine = make_engine()
        progress = engine.get_progress()
        assert progress["state"] == "IDLE"
        assert progress["progress_pct"] == 0.0

    def test_exchange_stats(self):
        engine = make_engine()
        engine.run()
        stats = engine.get_exchange_stats()
        assert stats["orders_filled"] > 0
        assert stats["open_orders"] == 0


# ---------------------------------------------------------------------------
# 6. Configuration errors
# ---------------------------------------------------------------------------

class TestConfigurationErrors:

    def test_no_strategy(self):
        engine = BacktestingEngine(make_config())
        engine.load_data(pair="BTC/USD", ticks=make_ticks(n_ticks=10))
        with pytest.raises(ConfigurationError):
            engine.run()

    def test_no_data(self):
        engine = BacktestingEngine(make_config())
        engine.set_strategy(ScriptedStrategy())
        with pytest.raises(ConfigurationError):
            engine.run()

    def test_end_before_start(self):
        engine = make_engine(config=make_config(end_date=START_MS))
        with pytest.raises(ConfigurationError):
            engine.run()

    def test_load_data_requires_source(self):
        engine = BacktestingEngine(make_config())
        with pytest.raises(ValueError):
            engine.load_data(pair="BTC/USD")
        with pytest.raises(ValueError):
            engine.load_data(ticks=make_ticks(n_ticks=1))


# ---------------------------------------------------------------------------
# 7. Convenience entry points
# ---------------------------------------------------------------------------

class TestEntryPoints:

    def test_run_backtest(self):
        result = run_backtest(
            make_config(), ScriptedStrategy(), {"BTC/USD": make_ticks(n_ticks=N_TICKS)}
        )
        assert result.tick_count == N_TICKS

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "btc.json"
        path.write_text(json.dumps(make_ticks(n_ticks=N_TICKS)))
        engine = BacktestingEngine(make_config())
        assert engine.load_data(path=path) == N_TICKS
        engine.set_strategy(ScriptedStrategy())
        assert engine.run().tick_count == N_TICKS

    def test_load_configured_instruments(self, tmp_path):
        path = tmp_path / "btc.ticks"
        path.write_text(json.dumps(make_ticks(n_ticks=N_TICKS)))
        config = make_config()
        config.data.instruments["BTC/USD"] = InstrumentConfig(file=str(path), format="json")

        engine = BacktestingEngine(config)
        assert engine.load_configured_data() == N_TICKS
        engine.set_strategy(ScriptedStrategy())
        assert engine.run().tick_count == N_TICKS

    def test_iso_dates_in_config(self):
        config = make_config(start_date="2024-01-01T00:00:00Z", end_date="2024-01-01T00:10:00Z")
        engine = make_engine(config=config)
        assert engine.run().tick_count == N_TICKS
