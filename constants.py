#!/usr/bin/env python3
from typing import Dict, FrozenSet

# --- ANSI Color Codes ---
C_GREEN = '\033[92m'
C_RED = '\033[91m'
C_YELLOW = '\033[93m'
C_BLUE = '\033[94m'
C_RESET = '\033[0m'

# --- API Configuration ---
HELIUS_API_BASE_URL = 'https://api-mainnet.helius-rpc.com'
GECKOTERMINAL_API_BASE_URL = 'https://api.geckoterminal.com/api/v2'
DEXSCREENER_API_BASE_URL = 'https://api.dexscreener.com/latest/dex'

# --- Environment Variable Names ---
HELIUS_API_KEY_ENV_VAR = 'HELIUS_API_KEY'
TELEGRAM_BOT_TOKEN_ENV_VAR = 'TELEGRAM_BOT_TOKEN'
TELEGRAM_CHAT_ID_ENV_VAR = 'TELEGRAM_CHAT_ID'

# --- Solana ---
LAMPORTS_PER_SOL = 1_000_000_000
WSOL_MINT = 'So11111111111111111111111111111111111111112'
USDC_MINT = 'EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v'
USDT_MINT = 'Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB'

# Wrapped SOL and the major stablecoins are never the traded token.
IGNORED_MINTS: FrozenSet[str] = frozenset({
    WSOL_MINT.lower(),
    USDC_MINT.lower(),
    USDT_MINT.lower(),
})

# Fallback supply used to derive market cap from price (pump.fun style mints).
DEFAULT_TOKEN_SUPPLY = 1_000_000_000

# --- Classification Thresholds ---
TOKEN_EPSILON = 1e-6
NATIVE_EPSILON = 1e-3
LARGE_TOKEN_OUTFLOW = 1000.0
NATIVE_NOISE_FLOOR = 0.01
SELL_KEYWORDS = ('sold', 'sell', 'swapped', 'swap')

# --- Grouping / Alerting ---
DEFAULT_GROUPING_WINDOW = 120
DEFAULT_ALERT_DELAY = 60
FLIP_WINDOW = 60

# --- Pattern Analysis ---
LOW_MARKET_CAP_FLOOR = 50_000.0
VERY_LOW_MARKET_CAP_FLOOR = 10_000.0
LARGE_BUY_SOL = 1.5
TEST_BUY_SOL = 0.5
UNUSUAL_BUY_MULTIPLIER = 2.5
TYPICAL_SIZE_TOLERANCE = 0.1
MARKET_CAP_HISTORY_MIN = 5
LOW_ENTRY_PERCENTILE = 10.0
HIGH_ENTRY_PERCENTILE = 90.0

# --- Cache TTLs (seconds) ---
PRICE_CACHE_TTL = 3 * 60
METADATA_CACHE_TTL = 5 * 60

# --- Explorer Links ---
TOKEN_LINKS: Dict[str, str] = {
    'GMGN': 'https://gmgn.ai/sol/token/{mint}',
    'AXIOM': 'https://axiom.xyz/token/{mint}',
    'DEX': 'https://dexscreener.com/solana/{mint}',
}
SOLSCAN_TX_URL = 'https://solscan.io/tx/{signature}'
