"""Historical market data: order book snapshots, ticks and as-of lookup."""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union

import numpy as np
import pandas as pd

from engine.errors import DataGapError

logger = logging.getLogger(__name__)

PriceLevel = tuple[float, float]


def _coerce_levels(levels: Optional[Iterable[Any]], descending: bool) -> list[PriceLevel]:
    """Convert ``[[price, size], ...]`` (numbers or numeric strings) to floats."""
    if levels is None:
        return []
    out: list[PriceLevel] = []
    for level in levels:
        if len(level) < 2:
            raise ValueError(f"Price level needs [price, size], got {level!r}")
        out.append((float(level[0]), float(level[1])))
    out.sort(key=lambda lvl: lvl[0], reverse=descending)
    return out


@dataclass
class OrderBook:
    """Order book snapshot. Bids best-first (descending), asks best-first (ascending)."""

    bids: list[PriceLevel] = field(default_factory=list)
    asks: list[PriceLevel] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.bids = _coerce_levels(self.bids, descending=True)
        self.asks = _coerce_levels(self.asks, descending=False)

    @classmethod
    def from_dict(cls, raw: Union["OrderBook", dict[str, Any]]) -> "OrderBook":
        if isinstance(raw, OrderBook):
            return raw
        if not isinstance(raw, dict):
            raise ValueError(f"Order book must be a mapping, got {type(raw).__name__}")
        return cls(bids=raw.get("bids") or [], asks=raw.get("asks") or [])

    @property
    def best_bid(self) -> Optional[float]:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> Optional[float]:
        return self.asks[0][0] if self.asks else None

    @property
    def mid_price(self) -> Optional[float]:
        if self.best_bid is None or self.best_ask is None:
            return None
        return (self.best_bid + self.best_ask) / 2

    @property
    def is_crossed(self) -> bool:
        return (
            self.best_bid is not None
            and self.best_ask is not None
            and self.best_bid >= self.best_ask
        )

    def to_dict(self) -> dict[str, list[list[float]]]:
        return {
            "bids": [[p, s] for p, s in self.bids],
            "asks": [[p, s] for p, s in self.asks],
        }


@dataclass
class HistoricalTick:
    """One timestamped market snapshot for a pair."""

    timestamp: int
    pair: str
    order_book: OrderBook
    trades: list[dict[str, Any]] = field(default_factory=list)
    funding_rate: Optional[float] = None

    @classmethod
    def from_dict(
        cls,
        raw: Union["HistoricalTick", dict[str, Any]],
        pair: Optional[str] = None,
    ) -> "HistoricalTick":
        """Build a tick from a mapping with camelCase or snake_case keys."""
        if isinstance(raw, HistoricalTick):
            return raw
        if raw.get("timestamp") is None:
            raise ValueError(f"Tick is missing 'timestamp': {raw!r}")
        tick_pair = raw.get("pair") or pair
        if not tick_pair:
            raise ValueError(f"Tick is missing 'pair': {raw!r}")
        book = raw.get("orderBook", raw.get("order_book"))
        if book is None:
            raise ValueError(f"Tick is missing 'orderBook': {raw!r}")
        funding = raw.get("fundingRate", raw.get("funding_rate"))
        return cls(
            timestamp=int(raw["timestamp"]),
            pair=str(tick_pair),
            order_book=OrderBook.from_dict(book),
            trades=list(raw.get("trades") or []),
            funding_rate=float(funding) if funding is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "pair": self.pair,
            "orderBook": self.order_book.to_dict(),
            "trades": list(self.trades),
            "fundingRate": self.funding_rate,
        }


def _ticks_from_frame(pair: str, df: pd.DataFrame) -> list[HistoricalTick]:
    rows = df.to_dict(orient="records")
    ticks = []
    for row in rows:
        if "orderBook" not in row and "order_book" not in row:
            row["orderBook"] = {"bids": row.pop("bids", []), "asks": row.pop("asks", [])}
        funding = row.get("fundingRate", row.get("funding_rate"))
        if funding is not None and pd.isna(funding):
            row.pop("fundingRate", None)
            row.pop("funding_rate", None)
        if not isinstance(row.get("trades"), list):
            row["trades"] = []
        if not isinstance(row.get("pair"), str):
            row["pair"] = pair
        ticks.append(HistoricalTick.from_dict(row, pair=pair))
    return ticks


class HistoricalDataProvider:
    """In-memory, per-pair, timestamp-sorted tick store.

    Each pair is an independent namespace with its own streaming cursor.
    As-of lookups binary-search a parallel numpy array of timestamps.
    """

    def __init__(self) -> None:
        self._data: dict[str, list[HistoricalTick]] = {}
        self._timestamps: dict[str, np.ndarray] = {}
        self._cursors: dict[str, int] = {}
        self.start_time: Optional[int] = None
        self.end_time: Optional[int] = None

    def load_from_source(
        self,
        pair: str,
        ticks: Union[Iterable[Union[HistoricalTick, dict[str, Any]]], pd.DataFrame],
    ) -> int:
        """Replace the data for ``pair``. Returns the number of ticks loaded."""
        if isinstance(ticks, pd.DataFrame):
            loaded = _ticks_from_frame(pair, ticks)
        else:
            loaded = [HistoricalTick.from_dict(t, pair=pair) for t in ticks]

        # Stable sort keeps the input order of equal timestamps.
        loaded.sort(key=lambda t: t.timestamp)

        self._data[pair] = loaded
        self._timestamps[pair] = np.fromiter(
            (t.timestamp for t in loaded), dtype=np.int64, count=len(loaded)
        )
        self._cursors[pair] = 0
        self._update_time_bounds()

        logger.info("Loaded %d ticks for %s", len(loaded), pair)
        return len(loaded)

    def _update_time_bounds(self) -> None:
        stamps = [s for s in self._timestamps.values() if len(s) > 0]
        if not stamps:
            self.start_time = None
            self.end_time = None
            return
        self.start_time = min(int(s[0]) for s in stamps)
        self.end_time = max(int(s[-1]) for s in stamps)

    def get_tick_at(self, pair: str, timestamp: int) -> Optional[HistoricalTick]:
        """Latest tick with ``tick.timestamp <= timestamp``, or None."""
        stamps = self._timestamps.get(pair)
        if stamps is None or len(stamps) == 0:
            return None
        idx = int(np.searchsorted(stamps, timestamp, side="right")) - 1
        if idx < 0:
            return None
        return self._data[pair][idx]

    def require_tick_at(self, pair: str, timestamp: int) -> HistoricalTick:
        tick = self.get_tick_at(pair, timestamp)
        if tick is None:
            raise DataGapError(pair, timestamp)
        return tick

    def get_ticks_in_range(self, pair: str, start: int, end: int) -> list[HistoricalTick]:
        """Ticks with ``start <= timestamp <= end``."""
        stamps = self._timestamps.get(pair)
        if stamps is None or end < start:
            return []
        lo = int(np.searchsorted(stamps, start, side="left"))
        hi = int(np.searchsorted(stamps, end, side="right"))
        return self._data[pair][lo:hi]

    def get_next_tick(self, pair: str) -> Optional[HistoricalTick]:
        ticks = self._data.get(pair)
        if ticks is None:
            return None
        index = self._cursors.get(pair, 0)
        if index >= len(ticks):
            return None
        self._cursors[pair] = index + 1
        return ticks[index]

    def has_more_data(self, pair: str) -> bool:
        ticks = self._data.get(pair)
        if ticks is None:
            return False
        return self._cursors.get(pair, 0) < len(ticks)

    def get_ticks_up_to(self, pair: str, timestamp: int) -> list[HistoricalTick]:
        """Drain the cursor up to and including ``timestamp``."""
        ticks = self._data.get(pair)
        if ticks is None:
            return []
        start = self._cursors.get(pair, 0)
        stop = int(np.searchsorted(self._timestamps[pair], timestamp, side="right"))
        if stop <= start:
            return []
        self._cursors[pair] = stop
        return ticks[start:stop]

    def reset(self, pair: Optional[str] = None) -> None:
        """Rewind one pair's cursor, or every pair's when ``pair`` is None."""
        if pair is not None:
            if pair in self._data:
                self._cursors[pair] = 0
            return
        for p in self._data:
            self._cursors[p] = 0

    def get_pairs(self) -> list[str]:
        return list(self._data.keys())

    def get_ticks(self, pair: str) -> list[HistoricalTick]:
        return list(self._data.get(pair, []))

    def get_progress(self, pair: str) -> float:
        ticks = self._data.get(pair)
        if not ticks:
            return 0.0
        return self._cursors.get(pair, 0) / len(ticks) * 100

    def get_overall_progress(self) -> float:
        pairs = self.get_pairs()
        if not pairs:
            return 0.0
        return sum(self.get_progress(p) for p in pairs) / len(pairs)

    def get_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "pairs": len(self._data),
            "total_ticks": 0,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration": (
                self.end_time - self.start_time
                if self.start_time is not None and self.end_time is not None
                else 0
            ),
            "pair_stats": {},
        }
        for pair, ticks in self._data.items():
            stats["total_ticks"] += len(ticks)
            stats["pair_stats"][pair] = {
                "ticks": len(ticks),
                "start_time": ticks[0].timestamp if ticks else None,
                "end_time": ticks[-1].timestamp if ticks else None,
                "current_index": self._cursors.get(pair, 0),
            }
        return stats

    def clear(self) -> None:
        self._data.clear()
        self._timestamps.clear()
        self._cursors.clear()
        self.start_time = None
        self.end_time = None
