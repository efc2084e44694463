"""Render analysed swap groups as Telegram HTML messages."""
from __future__ import annotations

import html
from datetime import datetime, timezone
from typing import List, Optional

from analysis.ledger import display_balance
from analysis.models import GroupAlert
from constants import SOLSCAN_TX_URL, TOKEN_EPSILON, TOKEN_LINKS

BUY_EMOJI = "🟢"
SELL_EMOJI = "🔴"


def format_market_cap(value: Optional[float]) -> str:
    if value is None or value <= 0:
        return "N/A"
    if value >= 1_000_000_000:
        return f"${value / 1_000_000_000:.2f}B"
    if value >= 1_000_000:
        return f"${value / 1_000_000:.2f}M"
    if value >= 1_000:
        return f"${value / 1_000:.1f}K"
    return f"${value:.0f}"


def format_token_amount(amount: float) -> str:
    if amount >= 1_000_000:
        return f"{amount / 1_000_000:.2f}M"
    if amount >= 1_000:
        return f"{amount / 1_000:.2f}K"
    return f"{amount:.4f}"


def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs}s"
    hours, minutes = divmod(minutes, 60)
    if hours < 24:
        return f"{hours}h {minutes}m"
    days, hours = divmod(hours, 24)
    return f"{days}d {hours}h"


def _signed(value: float, precision: int) -> str:
    return f"{'+' if value >= 0 else ''}{value:.{precision}f}"


def alert_prefix(alert: GroupAlert) -> str:
    if alert.is_multi_kol_buy:
        return f"🔥 {alert.kol_count} KOLs - "
    if alert.is_first_buy:
        return "🆕 FIRST BUY - "
    if alert.is_complete_exit:
        return "🚪 COMPLETE EXIT - "
    return ""


def render_group_alert(alert: GroupAlert) -> str:
    """Formats one group alert (pure buy, pure sell or mixed) for Telegram."""
    group = alert.group
    symbol = html.escape(alert.symbol)
    name = html.escape(alert.account_name)

    if group.is_mixed:
        action = f"{BUY_EMOJI}{SELL_EMOJI}"
    elif group.is_pure_sell:
        action = SELL_EMOJI
    else:
        action = BUY_EMOJI

    header = f"{alert_prefix(alert)}<b>{name}</b> {action} <b>${symbol}</b>"
    if alert.market_cap:
        header += f" @ {format_market_cap(alert.market_cap)}"

    lines: List[str] = [header]

    if alert.is_multi_kol_buy and alert.other_kols:
        lines.extend(["", f"🔥 <b>{alert.kol_count} KOLs</b> in this token:", f"• {name}"])
        lines.extend(f"• {html.escape(other)}" for other in alert.other_kols)

    lines.append("")
    if group.buys:
        count = f" ({len(group.buys)} txs)" if len(group.buys) > 1 else ""
        lines.append(
            f"Bought {format_token_amount(group.total_buy_token_amount)} tokens for "
            f"{group.total_buy_native_amount:.4f} SOL{count}"
        )
    if group.sells:
        count = f" ({len(group.sells)} txs)" if len(group.sells) > 1 else ""
        lines.append(
            f"Sold {format_token_amount(group.total_sell_token_amount)} tokens for "
            f"{group.total_sell_native_amount:.4f} SOL{count}"
        )
    if group.is_mixed:
        lines.append(f"Net: {_signed(group.net_native, 4)} SOL")

    holds = display_balance(alert.balance_after)
    holds_text = format_token_amount(holds) if holds > TOKEN_EPSILON else "0"
    lines.extend(["", f"HOLDS: {holds_text} ${symbol}"])

    pnl = alert.pnl
    if group.sells and pnl is not None and pnl.available:
        emoji = BUY_EMOJI if pnl.pnl >= 0 else SELL_EMOJI
        lines.append(f"PnL: {emoji} {_signed(pnl.pnl, 4)} SOL ({_signed(pnl.pnl_percent, 2)}%)")
        if abs(pnl.cumulative_pnl - pnl.pnl) > 1e-9:
            lines.append(f"Realized on token: {_signed(pnl.cumulative_pnl, 4)} SOL")

    if group.sells and alert.hold_time is not None:
        lines.append(f"Held: {format_duration(alert.hold_time)}")

    if alert.flips.detected:
        lines.append(
            f"⚡ Flip: {len(alert.flips.flips)}x, fastest {alert.flips.fastest}s "
            f"({_signed(alert.flips.total_pnl, 4)} SOL)"
        )

    assessment = alert.market_cap_assessment
    if assessment and assessment.very_low:
        lines.append("⚠️ Very low market cap entry")
    elif assessment and assessment.low:
        lines.append("⚠️ Low market cap entry")
    if assessment and assessment.percentile_rank is not None:
        median = f", median {format_market_cap(assessment.median)}" if assessment.median else ""
        lines.append(f"📊 Entry above {assessment.percentile_rank:.0f}% of past buys{median}")

    for deviation in alert.deviations:
        lines.append(f"{'❗' if deviation.severity == 'high' else 'ℹ️'} {html.escape(deviation.message)}")

    started = datetime.fromtimestamp(group.first_time, tz=timezone.utc).strftime("%b %d %H:%M:%S UTC")
    lines.extend(["", f"<code>{alert.token_id}</code>", f"<i>{started}</i>", ""])

    links = [f'<a href="{SOLSCAN_TX_URL.format(signature=group.signatures[-1])}">Solscan</a>']
    links.extend(
        f'<a href="{template.format(mint=alert.token_id)}">{label}</a>'
        for label, template in TOKEN_LINKS.items()
    )
    lines.append(" | ".join(links))
    return "\n".join(lines)
