"""Simulated matching venue: order lifecycle, balances, fees and slippage.

Orders are matched against a supplied order book snapshot by walking the
opposing side level by level. This is a price-level consuming match, not a
full limit order book with time priority.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from config import ExchangeConfig
from engine.errors import InsufficientBalanceError
from engine.events import EventLog, EventType
from engine.market_data import OrderBook

logger = logging.getLogger(__name__)

# Float noise tolerance for balance checks and fill completion.
EPSILON = 1e-12


class OrderSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"


class OrderStatus(str, Enum):
    OPEN = "OPEN"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"


class SlippageModel(str, Enum):
    NONE = "none"
    FIXED = "fixed"
    REALISTIC = "realistic"


OPEN_STATUSES = (OrderStatus.OPEN, OrderStatus.PARTIALLY_FILLED)


def split_pair(pair: str) -> tuple[str, str]:
    """Split ``"BASE/QUOTE"`` into its assets."""
    parts = pair.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"Pair must look like 'BASE/QUOTE', got {pair!r}")
    return parts[0], parts[1]


def apply_slippage(price: float, side: OrderSide, slippage_bps: float) -> float:
    """Move a fill price against the trader.

    - BUY:  price * (1 + bps / 10000)  -- pay more
    - SELL: price * (1 - bps / 10000)  -- receive less
    """
    factor = slippage_bps / 10_000
    if side == OrderSide.BUY:
        return price * (1 + factor)
    return price * (1 - factor)


@dataclass
class Order:
    """Matching-venue view of an order."""

    id: str
    pair: str
    side: OrderSide
    type: OrderType
    amount: float
    timestamp: int
    price: Optional[float] = None
    filled_amount: float = 0.0
    average_fill_price: float = 0.0
    status: OrderStatus = OrderStatus.OPEN
    reject_reason: str = ""
    # Set once the order survived a matching pass without completing.
    rested: bool = False

    @property
    def remaining_amount(self) -> float:
        return self.amount - self.filled_amount

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def is_terminal(self) -> bool:
        return not self.is_open

    def add_fill(self, amount: float, price: float) -> None:
        total_value = self.average_fill_price * self.filled_amount + price * amount
        if amount >= self.remaining_amount - EPSILON:
            self.filled_amount = self.amount
        else:
            self.filled_amount += amount
        self.average_fill_price = total_value / self.filled_amount
        if self.filled_amount == self.amount:
            self.status = OrderStatus.FILLED
        else:
            self.status = OrderStatus.PARTIALLY_FILLED

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pair": self.pair,
            "side": self.side.value,
            "type": self.type.value,
            "price": self.price,
            "amount": self.amount,
            "filled_amount": self.filled_amount,
            "average_fill_price": self.average_fill_price,
            "status": self.status.value,
            "reject_reason": self.reject_reason,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class Fill:
    """One matched quantity at one price for one order."""

    order_id: str
    pair: str
    side: OrderSide
    price: float
    amount: float
    fee: float
    timestamp: int
    liquidity: str = "taker"

    @property
    def value(self) -> float:
        return self.price * self.amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "pair": self.pair,
            "side": self.side.value,
            "price": self.price,
            "amount": self.amount,
            "fee": self.fee,
            "timestamp": self.timestamp,
            "liquidity": self.liquidity,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Fill":
        return cls(
            order_id=raw["order_id"],
            pair=raw["pair"],
            side=OrderSide(raw["side"]),
            price=float(raw["price"]),
            amount=float(raw["amount"]),
            fee=float(raw["fee"]),
            timestamp=int(raw["timestamp"]),
            liquidity=raw.get("liquidity", "taker"),
        )


def _empty_stats() -> dict[str, float]:
    return {
        "orders_placed": 0,
        "orders_filled": 0,
        "orders_partially_filled": 0,
        "orders_cancelled": 0,
        "orders_rejected": 0,
        "total_volume": 0.0,
        "total_fees": 0.0,
    }


class SimulatedExchange:
    """Deterministic matching venue with a per-asset balance ledger."""

    def __init__(
        self,
        initial_balances: Optional[dict[str, float]] = None,
        maker_fee: float = 0.0016,
        taker_fee: float = 0.0026,
        slippage_model: Union[SlippageModel, str] = SlippageModel.REALISTIC,
        fixed_slippage_bps: float = 10.0,
        maker_fills_for_resting_orders: bool = False,
        event_log: Optional[EventLog] = None,
    ) -> None:
        if initial_balances is None:
            initial_balances = {"USD": 10000.0}
        self._initial_balances = {k: float(v) for k, v in initial_balances.items()}
        self._balances: dict[str, float] = dict(self._initial_balances)
        self.maker_fee = maker_fee
        self.taker_fee = taker_fee
        self.slippage_model = SlippageModel(slippage_model)
        self.fixed_slippage_bps = fixed_slippage_bps
        self.maker_fills_for_resting_orders = maker_fills_for_resting_orders
        self._event_log = event_log

        self._orders: dict[str, Order] = {}
        self._fills: list[Fill] = []
        self._stats = _empty_stats()
        self._order_id_counter = 1

    @classmethod
    def from_config(
        cls,
        exchange_config: ExchangeConfig,
        initial_balances: dict[str, float],
        event_log: Optional[EventLog] = None,
    ) -> "SimulatedExchange":
        return cls(
            initial_balances=initial_balances,
            maker_fee=exchange_config.maker_fee,
            taker_fee=exchange_config.taker_fee,
            slippage_model=exchange_config.slippage_model,
            fixed_slippage_bps=exchange_config.fixed_slippage_bps,
            maker_fills_for_resting_orders=exchange_config.maker_fills_for_resting_orders,
            event_log=event_log,
        )

    # ------------------------------------------------------------------
    # Order entry
    # ------------------------------------------------------------------

    def place_order(
        self,
        pair: str,
        side: Union[OrderSide, str],
        type: Union[OrderType, str],
        amount: float,
        timestamp: int,
        price: Optional[float] = None,
    ) -> Order:
        """Accept an order intent, or return it REJECTED if the balance is short.

        For MARKET orders ``price`` is an optional hint used only for the
        advisory balance check; the fill price comes from the book.
        """
        side = OrderSide(side)
        order_type = OrderType(type)
        split_pair(pair)
        if amount <= 0:
            raise ValueError(f"Order amount must be positive, got {amount}")
        if order_type == OrderType.LIMIT and (price is None or price <= 0):
            raise ValueError("LIMIT orders require a positive price")

        order = Order(
            id=f"SIM-{self._order_id_counter}",
            pair=pair,
            side=side,
            type=order_type,
            amount=float(amount),
            timestamp=int(timestamp),
            price=float(price) if price is not None else None,
        )
        self._order_id_counter += 1

        try:
            self._check_balance(order)
        except InsufficientBalanceError as exc:
            order.status = OrderStatus.REJECTED
            order.reject_reason = str(exc)
            self._stats["orders_rejected"] += 1
            logger.debug("Rejected %s %s %s: %s", order.id, side.value, pair, exc)
            self._emit(EventType.ORDER_REJECTED, order.timestamp, order.id, reason=str(exc))
            return order

        self._orders[order.id] = order
        self._stats["orders_placed"] += 1
        self._emit(
            EventType.ORDER_PLACED, order.timestamp, order.id,
            pair=pair, side=side.value, type=order_type.value,
            price=order.price, amount=order.amount,
        )
        return order

    def _check_balance(self, order: Order) -> None:
        """Raise InsufficientBalanceError if the worst-case requirement is not covered."""
        base, quote = split_pair(order.pair)
        if order.side == OrderSide.SELL:
            available = self.get_balance(base)
            if order.amount > available + EPSILON:
                raise InsufficientBalanceError(base, order.amount, available)
            return

        available = self.get_balance(quote)
        if order.price is not None:
            required = order.amount * order.price * (1 + self.taker_fee)
            if required > available + EPSILON:
                raise InsufficientBalanceError(quote, required, available)
        elif available <= 0:
            raise InsufficientBalanceError(quote, None, available)

    def cancel_order(self, order_id: str) -> bool:
        order = self._orders.get(order_id)
        if order is None or not order.is_open:
            return False
        order.status = OrderStatus.CANCELLED
        self._stats["orders_cancelled"] += 1
        self._emit(EventType.ORDER_CANCELLED, order.timestamp, order.id)
        return True

    # ------------------------------------------------------------------
    # Matching
    # ------------------------------------------------------------------

    def process_order_matching(
        self,
        order_id: str,
        order_book: Union[OrderBook, dict[str, Any]],
        timestamp: int,
    ) -> list[Fill]:
        """Match an open order against a book snapshot, one fill per consumed level."""
        order = self._orders.get(order_id)
        if order is None or not order.is_open:
            return []

        book = OrderBook.from_dict(order_book)
        is_buy = order.side == OrderSide.BUY
        levels = book.asks if is_buy else book.bids
        fee_rate, liquidity = self._fee_for(order)

        fills: list[Fill] = []
        for level_price, level_size in levels:
            if order.remaining_amount <= EPSILON:
                break
            if order.type == OrderType.LIMIT:
                if is_buy and level_price > order.price:
                    break
                if not is_buy and level_price < order.price:
                    break
            if level_size <= 0:
                continue

            fill_price = self._fill_price(order, level_price)
            take = min(order.remaining_amount, level_size)
            take = self._affordable_amount(order, take, fill_price, fee_rate)
            if take <= EPSILON:
                logger.debug("Balance exhausted while matching %s", order.id)
                break

            fee = take * fill_price * fee_rate
            fills.append(self._record_fill(order, take, fill_price, fee, timestamp, liquidity))

        if order.is_open:
            order.rested = True

        if fills:
            if order.status == OrderStatus.FILLED:
                self._stats["orders_filled"] += 1
                self._emit(
                    EventType.ORDER_FILLED, timestamp, order.id,
                    fills=len(fills), average_price=order.average_fill_price,
                )
            else:
                self._stats["orders_partially_filled"] += 1
                self._emit(
                    EventType.ORDER_PARTIALLY_FILLED, timestamp, order.id,
                    fills=len(fills), filled_amount=order.filled_amount,
                )
        return fills

    def _fee_for(self, order: Order) -> tuple[float, str]:
        if (
            self.maker_fills_for_resting_orders
            and order.type == OrderType.LIMIT
            and order.rested
        ):
            return self.maker_fee, "maker"
        return self.taker_fee, "taker"

    def _fill_price(self, order: Order, level_price: float) -> float:
        if self.slippage_model != SlippageModel.FIXED:
            return level_price
        price = apply_slippage(level_price, order.side, self.fixed_slippage_bps)
        if order.type == OrderType.LIMIT:
            if order.side == OrderSide.BUY:
                price = min(price, order.price)
            else:
                price = max(price, order.price)
        return price

    def _affordable_amount(
        self, order: Order, amount: float, price: float, fee_rate: float
    ) -> float:
        """Clamp a fill so the paying balance cannot go negative."""
        base, quote = split_pair(order.pair)
        if order.side == OrderSide.BUY:
            balance = self.get_balance(quote)
            max_amount = balance / (price * (1 + fee_rate))
            # Step down until the debit made by _update_balances fits the balance.
            while max_amount > 0 and max_amount * price + max_amount * price * fee_rate > balance:
                max_amount = math.nextafter(max_amount, 0.0)
        else:
            max_amount = self.get_balance(base)
        return max(0.0, min(amount, max_amount))

    def _record_fill(
        self,
        order: Order,
        amount: float,
        price: float,
        fee: float,
        timestamp: int,
        liquidity: str,
    ) -> Fill:
        order.add_fill(amount, price)
        fill = Fill(
            order_id=order.id,
            pair=order.pair,
            side=order.side,
            price=price,
            amount=amount,
            fee=fee,
            timestamp=int(timestamp),
            liquidity=liquidity,
        )
        self._fills.append(fill)
        self._update_balances(order.pair, order.side, amount, price, fee)
        self._stats["total_volume"] += amount * price
        self._stats["total_fees"] += fee
        return fill

    def _update_balances(
        self, pair: str, side: OrderSide, amount: float, price: float, fee: float
    ) -> None:
        base, quote = split_pair(pair)
        if side == OrderSide.BUY:
            self._adjust(quote, -(amount * price + fee))
            self._adjust(base, amount)
        else:
            self._adjust(base, -amount)
            self._adjust(quote, amount * price - fee)

    def _adjust(self, asset: str, delta: float) -> None:
        balance = self._balances.get(asset, 0.0) + delta
        # Snap rounding residue from an exact spend back to zero.
        if -1e-9 < balance < 0:
            balance = 0.0
        self._balances[asset] = balance

    def _emit(self, event_type: EventType, timestamp: int, order_id: str, **details: Any) -> None:
        if self._event_log is not None:
            self._event_log.emit(event_type, timestamp, order_id, **details)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_order(self, order_id: str) -> Optional[Order]:
        return self._orders.get(order_id)

    def require_order(self, order_id: str) -> Order:
        order = self._orders.get(order_id)
        if order is None:
            raise KeyError(f"Unknown order id: {order_id}")
        return order

    def get_open_orders(self) -> list[Order]:
        return [o for o in self._orders.values() if o.is_open]

    def get_order_fills(self, order_id: str) -> list[Fill]:
        return [f for f in self._fills if f.order_id == order_id]

    def get_all_fills(self) -> list[Fill]:
        return list(self._fills)

    def get_balance(self, asset: str) -> float:
        return self._balances.get(asset, 0.0)

    def get_all_balances(self) -> dict[str, float]:
        return dict(self._balances)

    @property
    def initial_balances(self) -> dict[str, float]:
        return dict(self._initial_balances)

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "open_orders": len(self.get_open_orders()),
            "balances": dict(self._balances),
        }

    def reset(self, initial_balances: Optional[dict[str, float]] = None) -> None:
        """Clear orders, fills and stats; restore balances for a new run."""
        if initial_balances is not None:
            self._initial_balances = {k: float(v) for k, v in initial_balances.items()}
        self._balances = dict(self._initial_balances)
        self._orders.clear()
        self._fills = []
        self._stats = _empty_stats()
        self._order_id_counter = 1
