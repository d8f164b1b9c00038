"""Console text summary for backtest results."""

import math

from config import ms_to_iso
from engine.backtester import BacktestResult
from engine.metrics import PerformanceMetrics

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

WIDTH = 80


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _header_bar() -> str:
    """Return a full-width '=' border line."""
    return "=" * WIDTH


def _section_divider(label: str) -> str:
    """Return a section divider like: -- Label ------ (padded to WIDTH)."""
    prefix = f"-- {label} "
    remaining = WIDTH - len(prefix)
    return prefix + "-" * max(remaining, 0)


def _fmt_inf(value: float) -> str | None:
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return None


def _fmt_money(value: float) -> str:
    """Format as $X,XXX.XX."""
    return _fmt_inf(value) or f"${value:,.2f}"


def _fmt_pct(value: float, decimals: int = 2) -> str:
    """Format as X.XX%."""
    return _fmt_inf(value) or f"{value:.{decimals}f}%"


def _fmt_ratio(value: float) -> str:
    return _fmt_inf(value) or f"{value:.2f}"


def _row(left_label: str, left_val: str, right_label: str = "",
         right_val: str = "") -> str:
    """Build a two-column row.

    Layout:
      "  {left_label:<17}{left_val:<14}{right_label:<17}{right_val}"
    """
    left = f"  {left_label:<17}{left_val:<14}"
    if right_label:
        right = f"{right_label:<17}{right_val}"
    else:
        right = ""
    return left + right


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def format_report(metrics: PerformanceMetrics) -> str:
    """Format all metrics as an aligned text block."""
    lines: list[str] = []

    lines.append(_section_divider("Returns"))
    lines.append(_row("Total Return:", _fmt_pct(metrics.return_pct),
                      "Annualized:", _fmt_pct(metrics.annualized_return_pct)))
    lines.append(_row("Initial Value:", _fmt_money(metrics.initial_value),
                      "Final Value:", _fmt_money(metrics.final_value)))
    lines.append(_row("Buy & Hold:", _fmt_pct(metrics.buy_and_hold_return_pct),
                      "Excess Return:", _fmt_pct(metrics.excess_return_pct)))

    lines.append(_section_divider("P&L"))
    lines.append(_row("Total P&L:", _fmt_money(metrics.total_pnl),
                      "Net P&L:", _fmt_money(metrics.net_pnl)))
    lines.append(_row("Gross Profit:", _fmt_money(metrics.gross_profit),
                      "Gross Loss:", _fmt_money(metrics.gross_loss)))

    lines.append(_section_divider("Risk"))
    lines.append(_row("Max Drawdown:", _fmt_money(metrics.max_drawdown),
                      "Max DD %:", f"-{_fmt_pct(metrics.max_drawdown_pct)}"))
    lines.append(_row("Sharpe Ratio:", _fmt_ratio(metrics.sharpe_ratio),
                      "Sortino Ratio:", _fmt_ratio(metrics.sortino_ratio)))

    lines.append(_section_divider("Trades"))
    lines.append(_row("Total:", str(metrics.total_trades),
                      "Win Rate:", _fmt_pct(metrics.win_rate_pct, 1)))
    lines.append(_row("Winners:", str(metrics.winning_trades),
                      "Losers:", str(metrics.losing_trades)))
    lines.append(_row("Breakeven:", str(metrics.breakeven_trades),
                      "Profit Factor:", _fmt_ratio(metrics.profit_factor)))

    lines.append(_section_divider("Trade Quality"))
    lines.append(_row("Avg Win:", _fmt_money(metrics.average_win),
                      "Avg Loss:", _fmt_money(metrics.average_loss)))
    lines.append(_row("Largest Win:", _fmt_money(metrics.largest_win),
                      "Largest Loss:", _fmt_money(metrics.largest_loss)))

    lines.append(_section_divider("Volume"))
    lines.append(_row("Total Volume:", _fmt_money(metrics.total_volume),
                      "Total Fees:", _fmt_money(metrics.total_fees)))
    if metrics.oversold_amount > 0:
        lines.append(_row("Oversold:", f"{metrics.oversold_amount:.8f}"))

    return "\n".join(lines)


def print_summary(result: BacktestResult) -> str:
    """Print a formatted backtest summary to the console and return the text."""
    metrics = result.metrics
    lines: list[str] = []

    lines.append(_header_bar())
    lines.append("BACKTEST RESULTS SUMMARY".center(WIDTH))
    lines.append(_header_bar())
    lines.append("")

    start_str = ms_to_iso(metrics.start_time) if metrics.start_time is not None else "N/A"
    end_str = ms_to_iso(metrics.end_time) if metrics.end_time is not None else "N/A"
    lines.append(_row("Period:", f"{start_str} -- {end_str}"))
    lines.append(_row("Ticks:", str(result.tick_count),
                      "Fills:", str(len(result.fills))))
    balances = ", ".join(f"{k} {v:,.8g}" for k, v in result.initial_balances.items())
    lines.append(_row("Initial:", balances))
    lines.append("")

    lines.append(format_report(metrics))
    if metrics.total_trades == 0:
        lines.append("")
        lines.append("  No trades executed.")

    lines.append("")
    lines.append(_header_bar())

    text = "\n".join(lines)
    print(text)
    return text
