"""Moving-average crossover reference strategy.

Buys when the short MA crosses above the long MA and sells the held amount
when it crosses back below. Orders are MARKET orders sized in base units.
"""

import logging
from collections import deque
from typing import Optional

import numpy as np

from engine.exchange import OrderSide, OrderStatus, OrderType, split_pair
from engine.market_data import HistoricalTick
from strategy.base import Strategy

logger = logging.getLogger(__name__)


class MovingAverageCrossoverStrategy(Strategy):

    def __init__(
        self,
        pair: str = "BTC/USD",
        short_period: int = 5,
        long_period: int = 20,
        position_size: float = 0.1,
    ) -> None:
        super().__init__()
        if short_period >= long_period:
            raise ValueError("short_period must be smaller than long_period")
        self.pair = pair
        self.base_asset, self.quote_asset = split_pair(pair)
        self.short_period = short_period
        self.long_period = long_period
        self.position_size = position_size

        # One extra sample so the previous step's MAs are available.
        self._prices: deque[float] = deque(maxlen=long_period + 1)
        self.in_position = False
        self.entry_price: Optional[float] = None
        self.signals: list[tuple[int, str, float]] = []

    def initialize(self) -> None:
        self._prices.clear()
        self.in_position = False
        self.entry_price = None
        self.signals = []
        logger.info(
            "Initializing MA crossover on %s (%d/%d)",
            self.pair, self.short_period, self.long_period,
        )

    def _moving_average(self, period: int, offset: int = 0) -> float:
        prices = np.fromiter(self._prices, dtype=np.float64)
        end = len(prices) - offset
        return float(prices[end - period:end].mean())

    def tick(self, timestamp: int, data_by_pair: dict[str, HistoricalTick]) -> None:
        tick = data_by_pair.get(self.pair)
        if tick is None:
            return
        mid = tick.order_book.mid_price
        if mid is None:
            return

        self._prices.append(mid)
        if len(self._prices) <= self.long_period:
            return

        short_ma = self._moving_average(self.short_period)
        long_ma = self._moving_average(self.long_period)
        prev_short = self._moving_average(self.short_period, offset=1)
        prev_long = self._moving_average(self.long_period, offset=1)

        bullish = prev_short <= prev_long and short_ma > long_ma
        bearish = prev_short >= prev_long and short_ma < long_ma

        if bullish and not self.in_position:
            order = self.exchange.place_order(
                pair=self.pair,
                side=OrderSide.BUY,
                type=OrderType.MARKET,
                amount=self.position_size,
                timestamp=timestamp,
            )
            if order.status != OrderStatus.REJECTED:
                self.in_position = True
                self.entry_price = mid
                self.signals.append((timestamp, "BUY", mid))
                logger.debug("BUY %s %.8f @ %.2f", self.pair, self.position_size, mid)

        elif bearish and self.in_position:
            held = self.exchange.get_balance(self.base_asset)
            if held <= 0:
                return
            order = self.exchange.place_order(
                pair=self.pair,
                side=OrderSide.SELL,
                type=OrderType.MARKET,
                amount=min(self.position_size, held),
                timestamp=timestamp,
            )
            if order.status != OrderStatus.REJECTED:
                self.in_position = False
                self.entry_price = None
                self.signals.append((timestamp, "SELL", mid))
                logger.debug("SELL %s @ %.2f", self.pair, mid)
