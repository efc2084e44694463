#!/usr/bin/env python3
import asyncio
import logging
import aiohttp
import time
from telegram import BotCommand
from telegram.ext import Application, CommandHandler
from telegram.error import TimedOut, TelegramError

import constants
from config import AppConfig, load_config
from bot.handlers import help_command, status_command, kols_command
from bot.notifier import LoggingNotifier, TelegramNotifier
from monitor import KolMonitor
from services.dexscreener_client import DexScreenerClient
from services.geckoterminal_client import GeckoTerminalClient
from services.helius_client import HeliusClient
from storage import SQLiteRepository, Subscriber


def build_monitor(config: AppConfig, session: aiohttp.ClientSession, repository: SQLiteRepository, notifier) -> KolMonitor:
    """Wires the HTTP clients, repository and notifier into a monitor."""
    return KolMonitor(
        config,
        HeliusClient(session, config.helius_api_key, timeout=config.fetch_timeout),
        GeckoTerminalClient(session, timeout=config.fetch_timeout),
        DexScreenerClient(session, timeout=config.fetch_timeout),
        repository,
        notifier,
    )


async def seed_default_subscriber(config: AppConfig, repository: SQLiteRepository) -> None:
    """Registers the configured chat as a subscriber of every watched wallet."""
    if not config.telegram_chat_id:
        return
    await repository.upsert_subscriber(
        Subscriber(chat_id=config.telegram_chat_id, tracked_accounts=list(config.kols))
    )


async def post_init_hook(application: Application) -> None:
    """A hook that runs after the bot is initialized to set up shared clients and tasks."""
    # Create and store a single, shared aiohttp session
    session = aiohttp.ClientSession(headers={'User-Agent': 'KolMonitorBot/1.0'})
    application.bot_data['http_session'] = session

    config = application.bot_data['config']
    repository = application.bot_data['repository']
    await seed_default_subscriber(config, repository)

    # Set bot commands
    commands = [
        BotCommand("status", "Check bot status"),
        BotCommand("kols", "List watched wallets"),
        BotCommand("help", "Show help message"),
    ]
    try:
        await application.bot.set_my_commands(commands)
    except (TimedOut, TelegramError) as exc:
        print(
            f"{constants.C_YELLOW}Warning: unable to set Telegram bot commands ({exc})."
            f" Continuing startup without updating commands.{constants.C_RESET}"
        )

    monitor = build_monitor(config, session, repository, TelegramNotifier(application.bot))
    application.bot_data['monitor'] = monitor
    application.bot_data['monitor_task'] = asyncio.create_task(monitor.start())


async def post_shutdown_hook(application: Application) -> None:
    """A hook that runs on application shutdown to clean up resources."""
    task = application.bot_data.get('monitor_task')
    if task:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
    session = application.bot_data.get('http_session')
    if session:
        await session.close()
    repository = application.bot_data.get('repository')
    if repository:
        await repository.close()


async def run_cli(config: AppConfig) -> None:
    """Runs the monitor without Telegram, writing alerts to the log."""
    repository = SQLiteRepository(config.db_path)
    async with aiohttp.ClientSession(headers={'User-Agent': 'KolMonitorBot/1.0'}) as session:
        monitor = build_monitor(config, session, repository, LoggingNotifier())
        try:
            await monitor.run_forever()
        finally:
            await repository.close()


def main() -> None:
    """The main synchronous entry point for the application."""
    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
    )
    logging.getLogger('httpx').setLevel(logging.WARNING)

    print(f"Watching {constants.C_BLUE}{len(config.kols)}{constants.C_RESET} wallet(s) every {config.interval}s")

    if not config.telegram_enabled or not config.telegram_bot_token:
        print("Telegram is not configured. The application will run in CLI-only mode.")
        try:
            asyncio.run(run_cli(config))
        except KeyboardInterrupt:
            print(f"{constants.C_YELLOW}Stopped.{constants.C_RESET}")
        return

    application = (
        Application.builder()
        .token(config.telegram_bot_token)
        .post_init(post_init_hook)
        .post_shutdown(post_shutdown_hook)
        .build()
    )

    # Store config and other shared data
    application.bot_data['config'] = config
    application.bot_data['start_time'] = time.time()
    application.bot_data['repository'] = SQLiteRepository(config.db_path)

    # Register command handlers
    application.add_handler(CommandHandler("start", help_command))
    application.add_handler(CommandHandler("help", help_command))
    application.add_handler(CommandHandler("status", status_command))
    application.add_handler(CommandHandler("kols", kols_command))

    print(f"{constants.C_GREEN}Bot is running. Press Ctrl+C to stop.{constants.C_RESET}")

    application.run_polling()


if __name__ == "__main__":
    main()
