#!/usr/bin/env python3
"""
V3 Position Indexer — Wallet Scanner
=====================================

Discovers the active positions of a wallet on one DEX deployment.

Flow:
  1. balanceOf(wallet)         → How many position NFTs the wallet holds
  2. tokenOfOwnerByIndex(w, i) → Token ID at index i           (batched)
  3. positions(tokenId)        → keep liquidity > 0             (batched)
  4. Farm subgraph             → staked token IDs (the farm owns those NFTs)

Contract References:
  NonfungiblePositionManager: https://github.com/Uniswap/v3-periphery/blob/main/contracts/NonfungiblePositionManager.sol
  ERC-721 Enumerable:         https://eips.ethereum.org/EIPS/eip-721
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from lp_tracker.rpc_helpers import (
    SELECTORS,
    encode_uint256 as _encode_uint256,
    encode_address as _encode_address,
    decode_uint as _decode_uint,
    eth_call as _eth_call,
    eth_call_batch as _eth_call_batch,
)
from lp_tracker.subgraph_client import SubgraphClient
from position_reader import PositionReader, parse_positions_result

logger = logging.getLogger(__name__)


class DataSourceUnavailable(RuntimeError):
    """The RPC endpoint cannot be reached for the wallet enumeration."""


@dataclass
class WalletIndex:
    """Active token ids of a wallet, plus the subgraph record of staked ones."""

    wallet: str
    token_ids: List[int] = field(default_factory=list)
    staked: Dict[int, dict] = field(default_factory=dict)


class PositionIndexer:
    """
    Enumerates a wallet's active positions.

    Usage:
        indexer = PositionIndexer(reader, subgraph)
        ids = await indexer.list_token_ids("0x...")
    """

    def __init__(self, reader: PositionReader, subgraph: Optional[SubgraphClient] = None):
        self.reader = reader
        self.subgraph = subgraph

    async def get_position_count(self, wallet: str) -> int:
        """balanceOf(address) on the position manager."""
        calldata = SELECTORS["balanceOf"] + _encode_address(wallet)
        result = await _eth_call(
            self.reader.rpc_url, self.reader.position_manager, calldata, timeout=self.reader.timeout
        )
        return _decode_uint(result, 0)

    async def get_token_ids(self, wallet: str, count: int) -> List[int]:
        """
        Token IDs held by ``wallet`` via tokenOfOwnerByIndex.
        Batches all calls in a single RPC request.
        """
        if count == 0:
            return []
        calls = [
            (
                self.reader.position_manager,
                SELECTORS["tokenOfOwnerByIndex"] + _encode_address(wallet) + _encode_uint256(i),
            )
            for i in range(count)
        ]
        results = await _eth_call_batch(self.reader.rpc_url, calls, timeout=self.reader.timeout)
        return [_decode_uint(r, 0) for r in results if r]

    async def filter_active(self, token_ids: List[int]) -> List[int]:
        """Keep the ids whose positions() liquidity is > 0 (order preserved)."""
        if not token_ids:
            return []
        calls = [
            (self.reader.position_manager, SELECTORS["positions"] + _encode_uint256(tid))
            for tid in token_ids
        ]
        results = await _eth_call_batch(self.reader.rpc_url, calls, timeout=self.reader.timeout)
        active = []
        for tid, raw in zip(token_ids, results):
            if not raw:
                logger.warning("positions(%s) returned no data, skipping", tid)
                continue
            if parse_positions_result(tid, raw).liquidity > 0:
                active.append(tid)
        return active

    async def index(self, wallet: str) -> WalletIndex:
        """
        Direct holdings with liquidity, merged with staked positions.

        Raises:
            DataSourceUnavailable: If the direct enumeration fails.
        """
        try:
            count = await self.get_position_count(wallet)
            held = await self.get_token_ids(wallet, count)
            active = await self.filter_active(held)
        except (RuntimeError, httpx.HTTPError, ValueError) as exc:
            raise DataSourceUnavailable(f"Cannot enumerate positions of {wallet}: {exc}") from exc

        result = WalletIndex(wallet=wallet, token_ids=list(active))
        if self.subgraph is not None:
            for record in await self.subgraph.staked_positions(wallet):
                try:
                    tid = int(record["id"])
                except (KeyError, TypeError, ValueError):
                    logger.warning("Unexpected subgraph record: %s", record)
                    continue
                if not record.get("isStaked"):
                    logger.debug("Token %s is no longer staked, ignoring its farm record", tid)
                    continue
                result.staked[tid] = record
                if tid not in result.token_ids:
                    result.token_ids.append(tid)

        logger.info(
            "Wallet %s: %d held, %d staked, %d active in total",
            wallet, len(active), len(result.staked), len(result.token_ids),
        )
        return result

    async def list_token_ids(self, wallet: str) -> List[int]:
        return (await self.index(wallet)).token_ids
