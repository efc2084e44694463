#!/usr/bin/env python3
"""Client helpers for the GeckoTerminal REST API."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from analysis.models import TokenPrice
from constants import GECKOTERMINAL_API_BASE_URL, PRICE_CACHE_TTL
from services.cache import TTLCache

logger = logging.getLogger(__name__)


class GeckoTerminalClient:
    """Thin async wrapper for GeckoTerminal token prices on Solana."""

    NETWORK = "solana"

    def __init__(
        self,
        session: aiohttp.ClientSession,
        *,
        cache: Optional[TTLCache[TokenPrice]] = None,
        rate_limit_delay: float = 1.0,
        timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._cache: TTLCache[TokenPrice] = cache if cache is not None else TTLCache(PRICE_CACHE_TTL)
        self._rate_limit_delay = rate_limit_delay
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._last_request_ts: float = 0.0
        self._lock = asyncio.Lock()

    async def _wait_for_rate_limit(self) -> None:
        async with self._lock:
            now = asyncio.get_running_loop().time()
            elapsed = now - self._last_request_ts
            if elapsed < self._rate_limit_delay:
                await asyncio.sleep(self._rate_limit_delay - elapsed)
            self._last_request_ts = asyncio.get_running_loop().time()

    async def _get(self, path: str) -> Optional[Dict[str, Any]]:
        await self._wait_for_rate_limit()
        url = f"{GECKOTERMINAL_API_BASE_URL}{path}"
        try:
            async with self._session.get(
                url,
                headers={'Accept': 'application/json;version=20230203'},
                timeout=self._timeout,
            ) as response:
                response.raise_for_status()
                return await response.json()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.error("GeckoTerminal request failed for %s: %s", url, exc)
            return None

    async def price_of(self, mint: str) -> Optional[TokenPrice]:
        """Current USD price and 24h change of a mint, cached for a few minutes."""
        cached = self._cache.get(mint)
        if cached is not None:
            return cached

        data = await self._get(f"/simple/networks/{self.NETWORK}/token_price/{mint}")
        price = self._parse_price(data, mint)
        if price is None:
            stale = self._cache.get_stale(mint)
            if stale is not None:
                logger.info("Using expired price cache for %s", mint[:8])
            return stale

        self._cache.set(mint, price)
        return price

    @staticmethod
    def _parse_price(data: Optional[Dict[str, Any]], mint: str) -> Optional[TokenPrice]:
        if not data:
            return None
        attrs = (data.get("data") or {}).get("attributes") or {}
        prices = attrs.get("token_prices") or {}
        raw_price = prices.get(mint)
        if raw_price is None:
            return None
        try:
            price = float(raw_price)
        except (TypeError, ValueError):
            return None
        change = (attrs.get("h24_price_change_percentage") or {}).get(mint)
        try:
            change_24h = float(change) if change is not None else None
        except (TypeError, ValueError):
            change_24h = None
        return TokenPrice(price=price, change_24h=change_24h)
