#!/usr/bin/env python3
"""
LP Yield Tracker — DEXScreener Token Prices
============================================
Based on the official documentation: https://docs.dexscreener.com/api/reference

USD unit prices for the tokens of a position (token0, token1, farm reward).
Endpoint: GET /tokens/v1/{chainId}/{tokenAddresses}  (≤ 30 addresses)
Rate limit: 300 requests/minute
"""

import asyncio
import logging
import time
from decimal import Decimal, InvalidOperation
from typing import Dict, Iterable, Optional

import httpx

from lp_tracker.central_config import DexScreenerAPI
from lp_tracker.stablecoins import is_usd_pegged

logger = logging.getLogger(__name__)


# ── Rate Limiter (CWE-770 mitigation) ────────────────────────────────────


class _RateLimiter:
    """Token-bucket rate limiter to respect API limits.

    CWE-770: Allocation of Resources Without Limits or Throttling.

    Prevents exceeding DEXScreener's 300 req/min limit and avoids
    IP bans that would break the dashboard for every wallet.
    """

    def __init__(self, max_requests: int, period_seconds: float):
        self._max = max_requests
        self._period = period_seconds
        self._timestamps: list[float] = []

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        now = time.monotonic()
        # Purge timestamps outside the current window
        self._timestamps = [t for t in self._timestamps if now - t < self._period]
        if len(self._timestamps) >= self._max:
            # Wait until the oldest request expires
            sleep_time = self._period - (now - self._timestamps[0]) + 0.1
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
        self._timestamps.append(time.monotonic())


# Shared limiter (module-level singleton): 250/min, safety margin under 300
_dexscreener_limiter = _RateLimiter(max_requests=250, period_seconds=60)


def _to_decimal(value) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return price if price > 0 else None


def _pick_prices(pairs: list, wanted: set[str]) -> Dict[str, Decimal]:
    """
    Best USD price per wanted address from a list of DEXScreener pairs.

    A token quoted as baseToken uses ``priceUsd`` directly; as quoteToken its
    price is ``priceUsd / priceNative``. The most liquid pair wins.
    """
    best: Dict[str, tuple[float, Decimal]] = {}
    for pair in pairs:
        try:
            liquidity = float((pair.get("liquidity") or {}).get("usd") or 0)
        except (TypeError, ValueError):
            liquidity = 0.0
        base_addr = (pair.get("baseToken") or {}).get("address", "").lower()
        quote_addr = (pair.get("quoteToken") or {}).get("address", "").lower()
        price_usd = _to_decimal(pair.get("priceUsd"))
        if price_usd is None:
            continue

        candidates = []
        if base_addr in wanted:
            candidates.append((base_addr, price_usd))
        if quote_addr in wanted:
            native = _to_decimal(pair.get("priceNative"))
            if native is not None:
                candidates.append((quote_addr, price_usd / native))

        for addr, price in candidates:
            if addr not in best or liquidity > best[addr][0]:
                best[addr] = (liquidity, price)
    return {addr: price for addr, (_, price) in best.items()}


class DexScreenerClient:
    """Official DEXScreener API client (token prices)."""

    def __init__(self, network: str = "base", timeout: int | None = None):
        self.network = network
        self.chain_id = DexScreenerAPI.SUPPORTED_CHAINS.get(network, network)
        self.timeout = timeout or DexScreenerAPI.TIMEOUT_SECONDS

    async def get_token_prices(
        self,
        addresses: Iterable[str],
        symbols: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Decimal]:
        """
        USD unit price per token address (lowercased keys).

        Tokens without a market quote are absent from the result, except
        USD-pegged stablecoins (by ``symbols``) which fall back to $1.
        Transport and HTTP errors are logged and the batch is skipped.
        """
        wanted = []
        for addr in addresses:
            key = addr.lower()
            if key not in wanted:
                wanted.append(key)
        if not wanted:
            return {}

        prices: Dict[str, Decimal] = {}
        step = DexScreenerAPI.MAX_TOKENS_PER_REQUEST
        async with httpx.AsyncClient(timeout=self.timeout, verify=True) as client:
            for i in range(0, len(wanted), step):
                batch = wanted[i:i + step]
                prices.update(await self._fetch_batch(client, batch))

        for addr in wanted:
            if addr in prices:
                continue
            symbol = (symbols or {}).get(addr, "")
            if symbol and is_usd_pegged(symbol):
                logger.info("No market price for %s, using $1 peg", symbol)
                prices[addr] = Decimal(1)
            else:
                logger.warning("No USD price found for token %s", addr)
        return prices

    async def _fetch_batch(
        self, client: httpx.AsyncClient, batch: list[str]
    ) -> Dict[str, Decimal]:
        url = DexScreenerAPI.get_tokens_url(self.chain_id, batch)
        try:
            await _dexscreener_limiter.acquire()
            response = await client.get(url)
        except httpx.HTTPError as exc:
            logger.error("DEXScreener request failed: %s", exc)
            return {}

        if response.status_code == 429:
            logger.warning("DEXScreener rate limit reached")
            return {}
        if response.status_code != 200:
            logger.error("DEXScreener HTTP error %s", response.status_code)
            return {}

        try:
            data = response.json()
        except ValueError:
            logger.error("DEXScreener returned a non-JSON body")
            return {}
        pairs = data if isinstance(data, list) else data.get("pairs") or []
        return _pick_prices(pairs, set(batch))
