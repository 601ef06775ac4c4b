from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import Optional, Sequence

from .models import OrderBlock, PairScore, Signal


def _fmt_ms(ts_ms: int, tz=timezone.utc) -> str:
    dt = datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(tz)
    return dt.strftime("%Y-%m-%d %H:%M")


def _escape_markdown_v2(text: str) -> str:
    specials = r"\_*[]()~`>#+-=|{}.!"
    escaped = []
    for ch in str(text):
        if ch in specials:
            escaped.append("\\" + ch)
        else:
            escaped.append(ch)
    return "".join(escaped)


def _escape_text(text: str, parse_mode: str) -> str:
    if parse_mode == "MARKDOWNV2":
        return _escape_markdown_v2(text)
    return html.escape(str(text), quote=False)


def _bold(text: str, parse_mode: str) -> str:
    escaped = _escape_text(text, parse_mode)
    if parse_mode == "MARKDOWNV2":
        return f"*{escaped}*"
    return f"<b>{escaped}</b>"


def _fmt_price(val: Optional[float]) -> str:
    if val is None:
        return "-"
    return f"{val:.6g}"


_TITLES = {
    "buy_entry": "BUY ENTRY",
    "sell_entry": "SELL ENTRY",
    "buy_exit": "BUY EXIT",
    "sell_exit": "SELL EXIT",
}


def format_signal(signal: Signal, parse_mode: str = "HTML", block: Optional[OrderBlock] = None) -> str:
    """Render a signal for Telegram in HTML or MarkdownV2."""
    pm = (parse_mode or "HTML").upper()
    pipe = "\\|" if pm == "MARKDOWNV2" else "|"
    title = _TITLES.get(signal.signal_type.value, signal.signal_type.value.upper())

    lines = [
        f"{_bold(signal.symbol, pm)}  {pipe}  {_bold(signal.timeframe, pm)}",
        f"{_bold(title, pm)} {_escape_text(f'conf {signal.confidence:.0%} | R:R {signal.risk_reward:.2f}', pm)}",
        "",
        _escape_text(f"Time (UTC): {_fmt_ms(signal.created_at_ms)}", pm),
        _escape_text(f"Entry: {_fmt_price(signal.entry_price)}", pm),
        _escape_text(f"Stop: {_fmt_price(signal.stop_loss)} | Target: {_fmt_price(signal.take_profit)}", pm),
        _escape_text(f"Reason: {signal.reason}", pm),
    ]

    if block is not None:
        lines.append(_escape_text(
            f"Zone: {_fmt_price(block.low)} - {_fmt_price(block.high)} | touches {block.touch_count} | strength {block.strength:.2f}",
            pm,
        ))

    return "\n".join(lines)


def format_best_pairs(pairs: Sequence[PairScore], parse_mode: str = "HTML") -> str:
    """Ranked opportunity table, one line per symbol."""
    pm = (parse_mode or "HTML").upper()
    if not pairs:
        return _escape_text("No pairs with data this cycle.", pm)
    lines = [_bold("Best pairs", pm)]
    for p in pairs:
        lines.append(_escape_text(
            f"{p.rank}. {p.symbol} {p.opportunity_score:.3f} "
            f"(vol {p.volatility:.2f} mom {p.momentum:.2f} trend {p.trend_strength:.2f} liq {p.liquidity:.2f})",
            pm,
        ))
    return "\n".join(lines)
