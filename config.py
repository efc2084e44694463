#!/usr/bin/env python3
import os
import json
import argparse
from typing import NamedTuple
import constants

class AppConfig(NamedTuple):
    """Typed configuration object."""
    kols: dict[str, str]
    interval: int
    sweep_interval: int
    fetch_limit: int
    max_concurrent_accounts: int
    fetch_timeout: float
    lookup_delay: float
    grouping_window: int
    alert_delay: int
    alert_all_swaps: bool
    telegram_enabled: bool
    db_path: str
    log_level: str
    helius_api_key: str
    telegram_bot_token: str | None
    telegram_chat_id: str | None


def parse_kol_arg(value: str) -> tuple[str, str]:
    """Splits `ADDRESS[=NAME]`; an unnamed account is labelled by its prefix."""
    address, _, name = value.partition('=')
    address = address.strip()
    if not address:
        raise argparse.ArgumentTypeError(f"Invalid KOL entry: {value!r}")
    return address, name.strip() or f"{address[:8]}..."


def load_kol_file(path: str) -> dict[str, str]:
    """Reads a JSON object mapping account address to display name."""
    with open(path, 'r', encoding='utf-8') as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object of address -> name")
    return {str(address): str(name) for address, name in data.items()}


def load_config(argv: list[str] | None = None) -> AppConfig:
    """
    Parses command-line arguments and loads environment variables to create a configuration object.
    """
    parser = argparse.ArgumentParser(
        description="Watch KOL wallets on Solana and alert on first buys and complete exits.",
        epilog="Example: ./main.py --kol 5Abc...=Ansem --telegram-enabled --interval 30"
    )
    parser.add_argument('--kol', nargs='+', type=parse_kol_arg, default=[], metavar='ADDRESS[=NAME]', help='One or more wallet addresses to watch.')
    parser.add_argument('--kol-file', type=str, help='JSON file mapping wallet addresses to display names.')
    parser.add_argument('--interval', type=int, default=60, help='Seconds to wait between polling passes (default: 60).')
    parser.add_argument('--sweep-interval', type=int, default=10, help='Seconds between checks of delayed buy alerts (default: 10).')
    parser.add_argument('--fetch-limit', type=int, default=50, help='Transactions requested per account per pass (default: 50).')
    parser.add_argument('--max-concurrent-accounts', type=int, default=4, help='Accounts processed in parallel (default: 4).')
    parser.add_argument('--fetch-timeout', type=float, default=10.0, help='HTTP timeout in seconds for every API call (default: 10).')
    parser.add_argument('--lookup-delay', type=float, default=0.5, help='Pause in seconds between price and metadata lookups (default: 0.5).')
    parser.add_argument('--grouping-window', type=int, default=constants.DEFAULT_GROUPING_WINDOW, help='Seconds that separate two swap groups of one token (default: 120).')
    parser.add_argument('--alert-delay', type=int, default=constants.DEFAULT_ALERT_DELAY, help='Seconds a buy alert is held for a follow-up sell (default: 60).')
    parser.add_argument('--alert-all-swaps', action='store_true', help='Alert on every swap group, not only first buys and complete exits.')
    parser.add_argument('--telegram-enabled', action='store_true', help='Enable Telegram notifications.')
    parser.add_argument('--db-path', type=str, default='data/kol_monitor.db', help='SQLite database path (default: data/kol_monitor.db).')
    parser.add_argument('--log-level', type=str.upper, default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'], help='Logging verbosity (default: INFO).')

    args = parser.parse_args(argv)

    kols: dict[str, str] = {}
    if args.kol_file:
        try:
            kols.update(load_kol_file(args.kol_file))
        except (OSError, ValueError) as exc:
            print(f"{constants.C_RED}Could not read KOL file {args.kol_file}: {exc}{constants.C_RESET}")
            exit(1)
    kols.update(dict(args.kol))

    if not kols:
        parser.error('at least one account is required via --kol or --kol-file.')

    for name, value in (
        ('--interval', args.interval),
        ('--sweep-interval', args.sweep_interval),
        ('--fetch-limit', args.fetch_limit),
        ('--max-concurrent-accounts', args.max_concurrent_accounts),
    ):
        if value <= 0:
            parser.error(f'{name} must be positive.')

    # Load from environment
    helius_api_key = os.environ.get(constants.HELIUS_API_KEY_ENV_VAR)
    telegram_bot_token = os.environ.get(constants.TELEGRAM_BOT_TOKEN_ENV_VAR)
    telegram_chat_id = os.environ.get(constants.TELEGRAM_CHAT_ID_ENV_VAR)

    if not helius_api_key:
        print(f"{constants.C_RED}{constants.HELIUS_API_KEY_ENV_VAR} environment variable not set. Get it from https://dashboard.helius.dev{constants.C_RESET}")
        exit(1)

    if args.telegram_enabled and not (telegram_bot_token and telegram_chat_id):
        print(f"{constants.C_RED}Telegram is enabled, but {constants.TELEGRAM_BOT_TOKEN_ENV_VAR} or {constants.TELEGRAM_CHAT_ID_ENV_VAR} are not set.{constants.C_RESET}")
        exit(1)

    return AppConfig(
        kols=kols,
        interval=args.interval,
        sweep_interval=args.sweep_interval,
        fetch_limit=args.fetch_limit,
        max_concurrent_accounts=args.max_concurrent_accounts,
        fetch_timeout=args.fetch_timeout,
        lookup_delay=args.lookup_delay,
        grouping_window=args.grouping_window,
        alert_delay=args.alert_delay,
        alert_all_swaps=args.alert_all_swaps,
        telegram_enabled=args.telegram_enabled,
        db_path=args.db_path,
        log_level=args.log_level,
        helius_api_key=helius_api_key,
        telegram_bot_token=telegram_bot_token,
        telegram_chat_id=telegram_chat_id,
    )
