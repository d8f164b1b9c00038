"""Lightweight event log for the backtest audit trail."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import pandas as pd


class EventType(str, Enum):
    RUN_STARTED = "RUN_STARTED"
    RUN_PAUSED = "RUN_PAUSED"
    RUN_RESUMED = "RUN_RESUMED"
    RUN_STOPPED = "RUN_STOPPED"
    RUN_COMPLETED = "RUN_COMPLETED"
    ORDER_PLACED = "ORDER_PLACED"
    ORDER_REJECTED = "ORDER_REJECTED"
    ORDER_FILLED = "ORDER_FILLED"
    ORDER_PARTIALLY_FILLED = "ORDER_PARTIALLY_FILLED"
    ORDER_CANCELLED = "ORDER_CANCELLED"
    DATA_GAP = "DATA_GAP"


@dataclass
class Event:
    type: EventType
    timestamp: int  # epoch ms
    order_id: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp,
            "order_id": self.order_id,
            "details": dict(self.details),
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Event":
        return cls(
            type=EventType(raw["type"]),
            timestamp=int(raw["timestamp"]),
            order_id=raw.get("order_id", ""),
            details=dict(raw.get("details") or {}),
        )


class EventLog:
    """Append-only event log for backtest audit trail."""

    def __init__(self) -> None:
        self._events: list[Event] = []

    def emit(
        self,
        event_type: EventType,
        timestamp: int,
        order_id: str = "",
        **details: Any,
    ) -> None:
        """Record an event."""
        self._events.append(Event(
            type=event_type,
            timestamp=timestamp,
            order_id=order_id,
            details=details,
        ))

    def get_events(
        self,
        event_type: Optional[EventType] = None,
    ) -> list[Event]:
        """Return events, optionally filtered by type."""
        if event_type is None:
            return list(self._events)
        return [e for e in self._events if e.type == event_type]

    def clear(self) -> None:
        self._events = []

    def to_dataframe(self) -> pd.DataFrame:
        """Export all events as DataFrame with UTC datetimes."""
        if not self._events:
            return pd.DataFrame(columns=["type", "timestamp", "order_id", "details"])
        return pd.DataFrame([
            {
                "type": e.type.value,
                "timestamp": pd.Timestamp(e.timestamp, unit="ms", tz="UTC"),
                "order_id": e.order_id,
                "details": e.details,
            }
            for e in self._events
        ])

    def __len__(self) -> int:
        return len(self._events)
