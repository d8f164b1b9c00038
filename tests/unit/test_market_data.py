"""Tests for engine.market_data module."""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

import pandas as pd
import pytest

from engine.errors import DataGapError
from engine.market_data import HistoricalDataProvider, HistoricalTick, OrderBook


def _tick(ts: int, pair: str = "BTC/USD", mid: float = 100.0) -> dict:
    return {
        "timestamp": ts,
        "pair": pair,
        "orderBook": {"bids": [[mid - 0.5, 1.0]], "asks": [[mid + 0.5, 1.0]]},
    }


@pytest.fixture
def provider() -> HistoricalDataProvider:
    p = HistoricalDataProvider()
    p.load_from_source("BTC/USD", [_tick(1000), _tick(3000, mid=101.0), _tick(2000, mid=99.0)])
    return p


# ---------------------------------------------------------------------------
# 1. Order book
# ---------------------------------------------------------------------------

class TestOrderBook:

    def test_levels_sorted_best_first(self):
        book = OrderBook(bids=[[99, 1], [100, 2]], asks=[[102, 1], [101, 2]])
        assert book.bids == [(100.0, 2.0), (99.0, 1.0)]
        assert book.asks == [(101.0, 2.0), (102.0, 1.0)]

    def test_numeric_strings_coerced(self):
        book = OrderBook.from_dict({"bids": [["100.5", "1"]], "asks": [["101", "2.5"]]})
        assert book.best_bid == 100.5
        assert book.asks == [(101.0, 2.5)]

    def test_mid_price(self, order_book):
        assert order_book.mid_price == pytest.approx(100.25)

    def test_empty_side_has_no_mid(self):
        book = OrderBook(bids=[[100, 1]])
        assert book.best_ask is None
        assert book.mid_price is None

    def test_crossed(self):
        assert OrderBook(bids=[[101, 1]], asks=[[100, 1]]).is_crossed
        assert not OrderBook(bids=[[100, 1]], asks=[[101, 1]]).is_crossed

    def test_bad_level_raises(self):
        with pytest.raises(ValueError):
            OrderBook(bids=[[100]])

    def test_from_dict_rejects_non_mapping(self):
        with pytest.raises(ValueError):
            OrderBook.from_dict([[100, 1]])


# ---------------------------------------------------------------------------
# 2. Tick parsing
# ---------------------------------------------------------------------------

class TestHistoricalTick:

    def test_camel_case(self):
        tick = HistoricalTick.from_dict({
            "timestamp": 5, "pair": "ETH/USD",
            "orderBook": {"bids": [], "asks": []}, "fundingRate": "0.0001",
        })
        assert tick.pair == "ETH/USD"
        assert tick.funding_rate == pytest.approx(0.0001)
        assert tick.trades == []

    def test_snake_case_and_default_pair(self):
        tick = HistoricalTick.from_dict(
            {"timestamp": 5, "order_book": {"bids": [[1, 1]], "asks": []}},
            pair="BTC/USD",
        )
        assert tick.pair == "BTC/USD"
        assert tick.order_book.best_bid == 1.0

    @pytest.mark.parametrize("missing", ["timestamp", "orderBook"])
    def test_missing_fields_raise(self, missing):
        raw = _tick(1000)
        del raw[missing]
        with pytest.raises(ValueError):
            HistoricalTick.from_dict(raw)

    def test_missing_pair_raises(self):
        raw = _tick(1000)
        del raw["pair"]
        with pytest.raises(ValueError):
            HistoricalTick.from_dict(raw)

    def test_to_dict_is_camel_case(self):
        out = HistoricalTick.from_dict(_tick(1000)).to_dict()
        assert set(out) == {"timestamp", "pair", "orderBook", "trades", "fundingRate"}


# ---------------------------------------------------------------------------
# 3. Provider lookup
# ---------------------------------------------------------------------------

class TestProviderLookup:

    def test_load_sorts(self, provider):
        stamps = [t.timestamp for t in provider.get_ticks("BTC/USD")]
        assert stamps == [1000, 2000, 3000]
        assert provider.start_time == 1000
        assert provider.end_time == 3000

    def test_as_of_lookup(self, provider):
        assert provider.get_tick_at("BTC/USD", 1000).timestamp == 1000
        assert provider.get_tick_at("BTC/USD", 2500).timestamp == 2000
        assert provider.get_tick_at("BTC/USD", 99_999).timestamp == 3000

    def test_before_first_tick_is_none(self, provider):
        assert provider.get_tick_at("BTC/USD", 999) is None

    def test_unknown_pair_is_none(self, provider):
        assert provider.get_tick_at("ETH/USD", 2000) is None

    def test_require_tick_raises_on_gap(self, provider):
        with pytest.raises(DataGapError) as exc:
            provider.require_tick_at("BTC/USD", 500)
        assert exc.value.pair == "BTC/USD"

    def test_range_inclusive(self, provider):
        ticks = provider.get_ticks_in_range("BTC/USD", 1000, 2000)
        assert [t.timestamp for t in ticks] == [1000, 2000]
        assert provider.get_ticks_in_range("BTC/USD", 3000, 1000) == []

    def test_equal_timestamps_keep_input_order(self):
        p = HistoricalDataProvider()
        p.load_from_source("BTC/USD", [_tick(1000, mid=100.0), _tick(1000, mid=200.0)])
        assert p.get_tick_at("BTC/USD", 1000).order_book.mid_price == pytest.approx(200.0)

    def test_reload_replaces(self, provider):
        provider.load_from_source("BTC/USD", [_tick(5000)])
        assert len(provider.get_ticks("BTC/USD")) == 1

    def test_reload_narrows_time_bounds(self, provider):
        provider.load_from_source("BTC/USD", [_tick(1500), _tick(2500)])
        assert provider.start_time == 1500
        assert provider.end_time == 2500
        assert provider.get_stats()["duration"] == 1000

    def test_time_bounds_span_all_pairs(self, provider):
        provider.load_from_source("ETH/USD", [_tick(500, pair="ETH/USD")])
        provider.load_from_source("BTC/USD", [_tick(2000)])
        assert provider.start_time == 500
        assert provider.end_time == 2000

    def test_load_from_dataframe(self):
        df = pd.DataFrame({
            "timestamp": [2000, 1000],
            "bids": [[[99.0, 1.0]], [[98.0, 1.0]]],
            "asks": [[[101.0, 1.0]], [[100.0, 1.0]]],
        })
        p = HistoricalDataProvider()
        assert p.load_from_source("BTC/USD", df) == 2
        first = p.get_tick_at("BTC/USD", 1000)
        assert first.pair == "BTC/USD"
        assert first.order_book.best_ask == 100.0


# ---------------------------------------------------------------------------
# 4. Streaming cursor
# ---------------------------------------------------------------------------

class TestProviderCursor:

    def test_next_tick_walks_in_order(self, provider):
        seen = []
        while provider.has_more_data("BTC/USD"):
            seen.append(provider.get_next_tick("BTC/USD").timestamp)
        assert seen == [1000, 2000, 3000]
        assert provider.get_next_tick("BTC/USD") is None
        assert provider.get_progress("BTC/USD") == pytest.approx(100.0)

    def test_ticks_up_to_drains(self, provider):
        first = provider.get_ticks_up_to("BTC/USD", 2000)
        assert [t.timestamp for t in first] == [1000, 2000]
        assert provider.get_ticks_up_to("BTC/USD", 2500) == []
        rest = provider.get_ticks_up_to("BTC/USD", 3000)
        assert [t.timestamp for t in rest] == [3000]

    def test_reset_rewinds(self, provider):
        provider.get_next_tick("BTC/USD")
        provider.reset()
        assert provider.get_next_tick("BTC/USD").timestamp == 1000

    def test_cursors_are_per_pair(self, provider):
        provider.load_from_source("ETH/USD", [_tick(1000, pair="ETH/USD")])
        provider.get_next_tick("BTC/USD")
        assert provider.get_next_tick("ETH/USD").timestamp == 1000
        assert provider.get_overall_progress() == pytest.approx((100 / 3 + 100) / 2)

    def test_lookup_does_not_move_cursor(self, provider):
        provider.get_tick_at("BTC/USD", 3000)
        assert provider.get_next_tick("BTC/USD").timestamp == 1000

    def test_stats_and_clear(self, provider):
        stats = provider.get_stats()
        assert stats["pairs"] == 1
        assert stats["total_ticks"] == 3
        assert stats["duration"] == 2000
        provider.clear()
        assert provider.get_pairs() == []
        assert provider.start_time is None
