# bot/handlers.py
import html
import time
from datetime import datetime, timezone

from telegram import Update
from telegram.ext import ContextTypes

# --- Command Handlers ---

async def help_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Displays a help message with all available commands."""
    help_text = """
    <b>Welcome to the KOL Wallet Monitor!</b>

    This bot watches KOL wallets on Solana and alerts on first buys and complete exits.

    <b><u>Available Commands:</u></b>
    /status - Get bot status and last polling pass info
    /kols - List the watched wallets
    /help - Show this help message
    """
    await update.message.reply_html(help_text)

async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Checks and reports the bot's operational status and monitor state."""
    bot_data = context.application.bot_data
    monitor = bot_data.get('monitor')
    monitor_task = bot_data.get('monitor_task')
    start_time = bot_data.get('start_time', 0)

    # Calculate uptime
    uptime_seconds = time.time() - start_time
    uptime_str = time.strftime('%H:%M:%S', time.gmtime(uptime_seconds))

    # Determine monitor status
    if monitor_task and not monitor_task.done():
        monitor_status = "✅ Running"
    elif monitor_task and monitor_task.done():
        if not monitor_task.cancelled() and monitor_task.exception():
            monitor_status = "❌ Stopped with error"
        else:
            monitor_status = "⏹️ Stopped"
    else:
        monitor_status = "⚠️ Not running"

    status_text = (
        f"<b>🤖 Bot Status</b>\n"
        f"Uptime: <code>{uptime_str}</code>\n\n"
        f"<b>👀 Monitor</b>\n"
        f"Status: {monitor_status}\n"
    )

    if monitor:
        last_poll = 'Never'
        if monitor.last_poll_time:
            last_poll = datetime.fromtimestamp(monitor.last_poll_time, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        status_text += f"Watched Wallets: <code>{len(monitor.accounts)}</code>\n"
        status_text += f"Last Pass: <code>{last_poll}</code>\n"
        status_text += f"Alerts Sent: <code>{monitor.alerts_sent}</code>\n"
        status_text += f"Pending Buy Alerts: <code>{len(monitor.pending)}</code>\n"
        if monitor.last_error:
            status_text += f"Last Error: <pre>{html.escape(monitor.last_error)}</pre>\n"

    await update.message.reply_html(status_text)

async def kols_command(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Lists the wallets the monitor is watching."""
    config = context.application.bot_data.get('config')
    if not config or not config.kols:
        await update.message.reply_text("No wallets are being watched.")
        return

    lines = [f"<b>👀 Watched Wallets ({len(config.kols)})</b>", ""]
    for address, name in config.kols.items():
        lines.append(f"• <b>{html.escape(name)}</b>\n  <code>{address}</code>")
    await update.message.reply_html("\n".join(lines))
