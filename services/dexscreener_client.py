#!/usr/bin/env python3
import asyncio
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from analysis.models import TokenMetadata
from constants import DEXSCREENER_API_BASE_URL, METADATA_CACHE_TTL
from services.cache import TTLCache

logger = logging.getLogger(__name__)


async def api_get(url: str, session: aiohttp.ClientSession, timeout: float = 10.0) -> Optional[Dict]:
    """Makes a single async GET request with a timeout."""
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            response.raise_for_status()
            return await response.json()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        logger.error("API request failed for %s: %s", url, e)
        return None


def _to_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class DexScreenerClient:
    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        cache: Optional[TTLCache[TokenMetadata]] = None,
        timeout: float = 10.0,
    ):
        self.session = session
        self.timeout = timeout
        self.cache: TTLCache[TokenMetadata] = cache if cache is not None else TTLCache(METADATA_CACHE_TTL)
        self._last_request_time = 0.0
        self._rate_limit_delay = 0.5 # 500ms delay between requests to stay under 300 req/min

    async def _wait_for_rate_limit(self):
        elapsed = time.time() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    async def get_token_pairs(self, mint: str) -> List[Dict]:
        """Gets every pair DexScreener knows for a token address."""
        await self._wait_for_rate_limit()
        url = f"{DEXSCREENER_API_BASE_URL}/tokens/{mint}"
        data = await api_get(url, self.session, timeout=self.timeout)
        if not data or not isinstance(data.get('pairs'), list):
            return []
        return data['pairs']

    async def metadata_of(self, mint: str) -> Optional[TokenMetadata]:
        """Name, symbol, market cap and image of a Solana mint, cached."""
        cached = self.cache.get(mint)
        if cached is not None:
            return cached

        pairs = [p for p in await self.get_token_pairs(mint) if p.get('chainId') == 'solana']
        if not pairs:
            stale = self.cache.get_stale(mint)
            if stale is None:
                logger.info("No DexScreener metadata for %s", mint[:8])
            return stale

        best = max(pairs, key=lambda p: _to_float((p.get('liquidity') or {}).get('usd')) or 0.0)
        token = best.get('baseToken') or {}
        if token.get('address') != mint:
            token = best.get('quoteToken') or token

        metadata = TokenMetadata(
            name=token.get('name'),
            symbol=token.get('symbol'),
            market_cap=_to_float(best.get('marketCap')) or _to_float(best.get('fdv')),
            image_url=(best.get('info') or {}).get('imageUrl'),
            price_usd=_to_float(best.get('priceUsd')) if token is best.get('baseToken') else None,
        )
        self.cache.set(mint, metadata)
        return metadata
