"""Global configuration loader for the backtesting simulation core."""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Union, get_type_hints

import pandas as pd
import yaml

DateLike = Union[str, int, float, datetime, pd.Timestamp]


@dataclass
class BacktestConfig:
    start_date: DateLike = "2024-01-01"
    end_date: DateLike = "2024-01-02"
    initial_balances: dict[str, float] = field(default_factory=lambda: {"USD": 10000.0})
    pairs: list[str] = field(default_factory=list)
    tick_interval_ms: int = 2000
    pause_poll_interval_s: float = 0.1


@dataclass
class ExchangeConfig:
    maker_fee: float = 0.0016
    taker_fee: float = 0.0026
    slippage_model: str = "realistic"
    fixed_slippage_bps: float = 10.0
    maker_fills_for_resting_orders: bool = False


@dataclass
class AnalysisConfig:
    risk_free_rate: float = 0.02
    quote_assets: list[str] = field(default_factory=lambda: ["USD", "USDT", "USDC"])
    days_per_year: float = 365.0


@dataclass
class InstrumentConfig:
    file: str = ""
    format: str = ""


@dataclass
class DataConfig:
    instruments: dict[str, InstrumentConfig] = field(default_factory=dict)


@dataclass
class Config:
    backtest: BacktestConfig = field(default_factory=BacktestConfig)
    exchange: ExchangeConfig = field(default_factory=ExchangeConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    data: DataConfig = field(default_factory=DataConfig)


def to_epoch_ms(value: DateLike) -> int:
    """Normalise a date-like value to integer epoch milliseconds (UTC).

    Integers and floats are taken to already be epoch milliseconds. Naive
    strings and datetimes are interpreted as UTC.
    """
    if isinstance(value, bool):
        raise TypeError("Boolean is not a valid timestamp")
    if isinstance(value, (int, float)):
        return int(value)
    ts = pd.Timestamp(value)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return int(ts.value // 1_000_000)


def ms_to_iso(ms: int) -> str:
    """Format epoch milliseconds as an ISO-8601 UTC string."""
    return pd.Timestamp(int(ms), unit="ms", tz="UTC").isoformat()


def _build_nested(cls: type, raw: dict[str, Any]) -> Any:
    """Recursively build a dataclass from a dict."""
    if not isinstance(raw, dict):
        return raw
    dc_fields = getattr(cls, "__dataclass_fields__", {})
    try:
        resolved_hints = get_type_hints(cls)
    except Exception:
        resolved_hints = {}
    kwargs: dict[str, Any] = {}
    for key, val in raw.items():
        if key not in dc_fields:
            continue
        field_type = resolved_hints.get(key, dc_fields[key].type)
        if isinstance(field_type, str):
            kwargs[key] = val
            continue
        origin = getattr(field_type, "__origin__", None)
        if hasattr(field_type, "__dataclass_fields__") and isinstance(val, dict):
            kwargs[key] = _build_nested(field_type, val)
        elif origin is dict and isinstance(val, dict):
            args = getattr(field_type, "__args__", None)
            if args and len(args) == 2 and hasattr(args[1], "__dataclass_fields__"):
                kwargs[key] = {
                    k: _build_nested(args[1], v) for k, v in val.items()
                }
            else:
                kwargs[key] = dict(val)
        else:
            kwargs[key] = val
    return cls(**kwargs)


def load_config(path: str | Path = "config.yaml") -> Config:
    """Load configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        return Config()
    with open(path) as f:
        raw = yaml.safe_load(f)
    if not raw:
        return Config()
    return _build_nested(Config, raw)
