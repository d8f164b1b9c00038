"""Strategy interface consumed by the backtesting engine.

A strategy reads the clock and market data and issues order intents only
through the injected exchange's ``place_order`` / ``cancel_order``. It never
mutates balances or orders directly.
"""

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from engine.clock import ClockView
    from engine.exchange import SimulatedExchange
    from engine.market_data import HistoricalTick


class Strategy(ABC):
    """Base class for all strategies.

    Required:
    - tick(): react to one simulated time step

    Optional hooks default to no-ops:
    - initialize(), set_clock(), update_market_data(), finalize()
    """

    def __init__(self) -> None:
        self.exchange: Optional["SimulatedExchange"] = None
        self.clock: Optional["ClockView"] = None

    def set_exchange(self, exchange: "SimulatedExchange") -> None:
        self.exchange = exchange

    def set_clock(self, clock: "ClockView") -> None:
        self.clock = clock

    def initialize(self) -> None:
        pass

    def update_market_data(self, data_by_pair: dict[str, "HistoricalTick"]) -> None:
        pass

    @abstractmethod
    def tick(self, timestamp: int, data_by_pair: dict[str, "HistoricalTick"]) -> None:
        """Process one time step.

        Args:
            timestamp: Current simulated time, epoch ms.
            data_by_pair: Latest tick at or before ``timestamp`` for each pair
                that has data; pairs with a data gap are absent.
        """

    def finalize(self) -> None:
        pass
