"""Error taxonomy for the simulation core."""

from typing import Any, Callable, Optional


class BacktestError(Exception):
    """Base class for all simulation core errors."""


class ConfigurationError(BacktestError):
    """Run cannot start: no strategy, no data, or invalid settings."""


class InvalidModeError(BacktestError):
    """Time manipulation attempted on a real-time clock."""


class InsufficientBalanceError(BacktestError):
    """An order needs more of an asset than the account holds.

    Raised inside the exchange's balance check and turned into a REJECTED
    order status; it never escapes ``place_order``.
    """

    def __init__(self, asset: str, required: Optional[float], available: float) -> None:
        self.asset = asset
        self.required = required
        self.available = available
        if required is None:
            message = f"no {asset} balance available ({available:.8f})"
        else:
            message = (
                f"insufficient {asset}: required {required:.8f}, "
                f"available {available:.8f}"
            )
        super().__init__(message)


class ListenerError(BacktestError):
    """A clock tick subscriber raised while being notified."""

    def __init__(
        self,
        listener: Callable[..., Any],
        original: BaseException,
        timestamp: Optional[int] = None,
    ) -> None:
        self.listener = listener
        self.original = original
        self.timestamp = timestamp
        name = getattr(listener, "__qualname__", repr(listener))
        super().__init__(f"tick listener {name} failed at {timestamp}: {original!r}")


class DataGapError(BacktestError):
    """No tick is available for a pair at or before the requested time."""

    def __init__(self, pair: str, timestamp: int) -> None:
        self.pair = pair
        self.timestamp = timestamp
        super().__init__(f"no tick for {pair} at or before {timestamp}")
