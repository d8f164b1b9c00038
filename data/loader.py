"""Historical tick loading for the backtesting engine.

Ticks are stored as JSON (an array of ticks or a mapping of pair to ticks),
CSV, or parquet. CSV and parquet files hold one row per tick with ``bids``,
``asks`` and ``trades`` as JSON-encoded text columns.
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterable, Optional

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from engine.market_data import HistoricalDataProvider, HistoricalTick

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = {"timestamp", "bids", "asks"}
TABULAR_COLUMNS = ["timestamp", "pair", "bids", "asks", "trades", "funding_rate"]
SUPPORTED_FORMATS = {".json": "json", ".csv": "csv", ".parquet": "parquet"}


def _decode_json_column(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value) if value else []
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return []
    return value


def _ticks_from_table(df: pd.DataFrame, pair: Optional[str], source: str) -> list[HistoricalTick]:
    missing = REQUIRED_COLUMNS - set(df.columns)
    if missing:
        raise ValueError(f"{source}: missing columns {sorted(missing)}")

    ticks = []
    for row in df.to_dict(orient="records"):
        funding = row.get("funding_rate", row.get("fundingRate"))
        row_pair = row.get("pair")
        ticks.append(HistoricalTick.from_dict(
            {
                "timestamp": int(row["timestamp"]),
                "pair": row_pair if isinstance(row_pair, str) and row_pair else pair,
                "orderBook": {
                    "bids": _decode_json_column(row["bids"]),
                    "asks": _decode_json_column(row["asks"]),
                },
                "trades": _decode_json_column(row.get("trades")),
                "fundingRate": None if funding is None or pd.isna(funding) else funding,
            },
            pair=pair,
        ))
    return ticks


def _table_from_ticks(ticks: Iterable[HistoricalTick]) -> pd.DataFrame:
    rows = [
        {
            "timestamp": t.timestamp,
            "pair": t.pair,
            "bids": json.dumps(t.order_book.to_dict()["bids"]),
            "asks": json.dumps(t.order_book.to_dict()["asks"]),
            "trades": json.dumps(t.trades),
            "funding_rate": t.funding_rate,
        }
        for t in ticks
    ]
    return pd.DataFrame(rows, columns=TABULAR_COLUMNS)


def load_ticks_json(path: str | Path, pair: Optional[str] = None) -> list[HistoricalTick]:
    """Load ticks from JSON.

    The file is either an array of tick objects or ``{pair: [tick, ...]}``;
    in the second form the key supplies the pair for ticks that omit it, and
    an explicit ``pair`` selects that key alone.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tick file not found: {path}")
    with open(path, encoding="utf-8") as f:
        raw = json.load(f)
    if isinstance(raw, dict):
        if not all(isinstance(items, list) for items in raw.values()):
            raise ValueError(f"{path}: expected a list of ticks for every pair")
        if pair is not None:
            if pair not in raw:
                raise ValueError(f"{path}: no ticks for {pair}; file holds {sorted(raw)}")
            raw = {pair: raw[pair]}
        ticks = [
            HistoricalTick.from_dict(item, pair=key)
            for key, items in raw.items()
            for item in items
        ]
    elif isinstance(raw, list):
        ticks = [HistoricalTick.from_dict(item, pair=pair) for item in raw]
    else:
        raise ValueError(f"{path}: expected a JSON array or a mapping of pair to ticks")
    logger.info("Loaded %d ticks from %s", len(ticks), path)
    return ticks


def load_ticks_csv(path: str | Path, pair: Optional[str] = None) -> list[HistoricalTick]:
    """Load ticks from a CSV file with JSON-encoded book columns."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Tick file not found: {path}")
    df = pd.read_csv(path, dtype={"bids": str, "asks": str, "trades": str, "pair": str})
    df.columns = [c.strip() for c in df.columns]
    ticks = _ticks_from_table(df, pair, source=str(path))
    logger.info("Loaded %d ticks from %s", len(ticks), path)
    return ticks


def load_ticks_parquet(path: str | Path, pair: Optional[str] = None) -> list[HistoricalTick]:
    """Load ticks from a parquet file written by ``export_ticks``."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Parquet file not found: {path}")
    df = pq.read_table(path).to_pandas()
    ticks = _ticks_from_table(df, pair, source=str(path))
    logger.info("Loaded %d ticks from %s", len(ticks), path)
    return ticks


def load_ticks(
    path: str | Path,
    pair: Optional[str] = None,
    fmt: Optional[str] = None,
) -> list[HistoricalTick]:
    """Load ticks, choosing the reader from ``fmt`` or else the file suffix."""
    path = Path(path)
    fmt = fmt.lower() if fmt else SUPPORTED_FORMATS.get(path.suffix.lower())
    if fmt == "json":
        return load_ticks_json(path, pair)
    if fmt == "csv":
        return load_ticks_csv(path, pair)
    if fmt == "parquet":
        return load_ticks_parquet(path, pair)
    raise ValueError(
        f"Unsupported tick file format '{path.suffix}'. "
        f"Expected one of {sorted(SUPPORTED_FORMATS)}"
    )


def load_into_provider(
    provider: HistoricalDataProvider,
    path: str | Path,
    pair: Optional[str] = None,
    fmt: Optional[str] = None,
) -> int:
    """Load a tick file into ``provider``. Returns the total ticks loaded.

    When ``pair`` is None the pair is taken from each tick, so a single file
    may carry several pairs.
    """
    ticks = load_ticks(path, pair, fmt)
    if pair is not None:
        return provider.load_from_source(pair, ticks)

    by_pair: dict[str, list[HistoricalTick]] = {}
    for tick in ticks:
        by_pair.setdefault(tick.pair, []).append(tick)
    return sum(provider.load_from_source(p, t) for p, t in by_pair.items())


def export_ticks(ticks: Iterable[HistoricalTick], path: str | Path) -> Path:
    """Write ticks to JSON, CSV or parquet according to the file suffix."""
    path = Path(path)
    fmt = SUPPORTED_FORMATS.get(path.suffix.lower())
    if fmt is None:
        raise ValueError(f"Unsupported tick file format '{path.suffix}'")
    ticks = list(ticks)
    path.parent.mkdir(parents=True, exist_ok=True)

    if fmt == "json":
        with open(path, "w", encoding="utf-8") as f:
            json.dump([t.to_dict() for t in ticks], f)
    elif fmt == "csv":
        _table_from_ticks(ticks).to_csv(path, index=False)
    else:
        table = pa.Table.from_pandas(_table_from_ticks(ticks), preserve_index=False)
        pq.write_table(table, path)

    logger.info("Wrote %d ticks to %s", len(ticks), path)
    return path


def export_ticks_json(provider: HistoricalDataProvider, path: str | Path) -> Path:
    """Dump every pair held by ``provider`` as ``{pair: [tick, ...]}`` JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        pair: [t.to_dict() for t in provider.get_ticks(pair)]
        for pair in provider.get_pairs()
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f)
    logger.info("Wrote %d pairs to %s", len(payload), path)
    return path


def validate_ticks(ticks: list[HistoricalTick]) -> list[str]:
    """Validate a tick sequence and return a list of issues found."""
    issues = []
    if not ticks:
        return issues

    stamps = pd.Series([t.timestamp for t in ticks])
    if not stamps.is_monotonic_increasing:
        issues.append("Timestamps are not in ascending order")
    n_dupes = int(stamps.duplicated().sum())
    if n_dupes > 0:
        issues.append(f"Found {n_dupes} duplicate timestamps")

    n_empty = sum(1 for t in ticks if not t.order_book.bids and not t.order_book.asks)
    if n_empty > 0:
        issues.append(f"Found {n_empty} ticks with an empty order book")

    n_crossed = sum(1 for t in ticks if t.order_book.is_crossed)
    if n_crossed > 0:
        issues.append(f"Found {n_crossed} ticks with a crossed order book")

    n_bad_levels = sum(
        1 for t in ticks
        for price, size in t.order_book.bids + t.order_book.asks
        if price <= 0 or size <= 0
    )
    if n_bad_levels > 0:
        issues.append(f"Found {n_bad_levels} price levels with non-positive price or size")

    return issues


def get_tick_stats(ticks: list[HistoricalTick]) -> dict:
    """Summary statistics for a tick sequence."""
    stats: dict[str, Any] = {"ticks": len(ticks)}
    if not ticks:
        return stats
    stamps = [t.timestamp for t in ticks]
    mids = pd.Series([t.order_book.mid_price for t in ticks], dtype="float64").dropna()
    stats["start"] = str(pd.Timestamp(min(stamps), unit="ms", tz="UTC"))
    stats["end"] = str(pd.Timestamp(max(stamps), unit="ms", tz="UTC"))
    stats["pairs"] = sorted({t.pair for t in ticks})
    if len(mids) > 0:
        stats["mid_min"] = float(mids.min())
        stats["mid_max"] = float(mids.max())
        stats["mid_mean"] = float(mids.mean())
    return stats
