#!/usr/bin/env python3
import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from constants import HELIUS_API_BASE_URL

logger = logging.getLogger(__name__)


class TransientFetchError(Exception):
    """The transaction source could not be reached or answered unusably."""


class HeliusClient:
    """Fetches enhanced transactions for an address, newest first."""

    def __init__(
        self,
        session: aiohttp.ClientSession,
        api_key: str,
        *,
        base_url: str = HELIUS_API_BASE_URL,
        timeout: float = 10.0,
    ) -> None:
        self.session = session
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    async def fetch_recent_transactions(self, account: str, limit: int = 50) -> List[Dict[str, Any]]:
        url = f"{self.base_url}/v0/addresses/{account}/transactions/"
        params = {'api-key': self.api_key, 'limit': limit}
        try:
            async with self.session.get(url, params=params, timeout=self.timeout) as response:
                if response.status == 429 or response.status >= 500:
                    raise TransientFetchError(f"Helius returned HTTP {response.status} for {account[:8]}")
                response.raise_for_status()
                data = await response.json()
        except asyncio.TimeoutError as exc:
            raise TransientFetchError(f"Helius request timed out for {account[:8]}") from exc
        except aiohttp.ClientError as exc:
            raise TransientFetchError(f"Helius request failed for {account[:8]}: {exc}") from exc

        transactions = self._unwrap(data)
        if transactions is None:
            keys = ', '.join(sorted(data.keys())) if isinstance(data, dict) else type(data).__name__
            raise TransientFetchError(f"Unexpected transaction payload for {account[:8]}: {keys}")
        logger.debug("Fetched %d transactions for %s", len(transactions), account[:8])
        return transactions[:limit]

    @staticmethod
    def _unwrap(data: Any) -> Optional[List[Dict[str, Any]]]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ('transactions', 'data'):
                if isinstance(data.get(key), list):
                    return data[key]
        return None
