#!/usr/bin/env python3
"""
On-Chain Position Reader for V3 Positions (+ MasterChef farm)
==============================================================

Reads position, pool and token state directly from the blockchain via
JSON-RPC. No web3.py dependency — uses httpx for raw eth_call.

Data Sources (per RPC call):
─────────────────────────────
1. NonfungiblePositionManager.positions(tokenId)
   Returns: token0, token1, fee, tickLower, tickUpper, liquidity,
            feeGrowthInside0LastX128, feeGrowthInside1LastX128,
            tokensOwed0, tokensOwed1
   Ref: https://github.com/Uniswap/v3-periphery/blob/main/contracts/NonfungiblePositionManager.sol

2. NonfungiblePositionManager.ownerOf(tokenId)  [optionally at a past block]
   Staked positions are owned by the MasterChef V3 farm.
   Mint discovery binary-searches the earliest block where ownerOf succeeds.

3. Pool.slot0(), liquidity(), feeGrowthGlobal{0,1}X128(), ticks(int24)
   [optionally at a past block — the mint block gives the entry price]
   Ref: https://github.com/Uniswap/v3-core/blob/main/contracts/UniswapV3Pool.sol

4. MasterChefV3.pendingCake(tokenId)
   Ref: https://developer.pancakeswap.finance/contracts/v3/masterchefv3

5. ERC-20.decimals(), ERC-20.symbol()

6. Logs: ERC-721 Transfer(0x0 → owner, tokenId) in the mint block, then the
   IncreaseLiquidity(tokenId, liquidity, amount0, amount1) of the same
   transaction receipt gives the initial deposit.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from lp_tracker.rpc_helpers import (
    ZERO_ADDRESS, SELECTORS, TOPICS,
    # Encoding
    encode_uint256 as _encode_uint256,
    encode_address as _encode_address,
    encode_uint24 as _encode_uint24,
    encode_int24 as _encode_int24,
    topic_uint256 as _topic_uint256,
    # Decoding
    decode_uint as _decode_uint,
    decode_int as _decode_int,
    decode_address as _decode_address,
    decode_string as _decode_string,
    strip_0x as _strip_0x,
    # RPC
    eth_call as _eth_call,
    eth_call_batch as _eth_call_batch,
    eth_block_number as _eth_block_number,
    eth_get_logs as _eth_get_logs,
    eth_get_block_timestamp as _eth_get_block_timestamp,
    eth_get_transaction_receipt as _eth_get_transaction_receipt,
    normalize_symbol as _normalize_symbol,
)
from lp_tracker.dex_registry import get_dex_config

logger = logging.getLogger(__name__)

# Node error messages meaning "token not minted yet at this block"
_NOT_MINTED_MARKERS = (
    "revert",
    "nonexistent",
    "does not exist",
    "invalid token id",
    "empty response",
)


class MintDataNotFound(LookupError):
    """The mint block, mint transfer or initial IncreaseLiquidity could not be located."""


# ── Data Model ──────────────────────────────────────────────────────────

@dataclass
class OnchainPosition:
    """A position NFT as stored by the position manager, plus farm state."""

    token_id: int
    token0: str
    token1: str
    fee: int                        # hundredths of a bip: 2500 = 0.25%
    tick_lower: int
    tick_upper: int
    liquidity: int
    fee_growth_inside0_last: int
    fee_growth_inside1_last: int
    tokens_owed0: int
    tokens_owed1: int
    owner: str = ""
    staked: bool = False
    pool_hint: Optional[str] = None
    pending_reward: int = 0
    subgraph_earned: int = 0

    @property
    def closed(self) -> bool:
        return self.liquidity == 0


@dataclass(frozen=True)
class PoolState:
    """Pool snapshot at ``block`` (None = latest)."""

    address: str
    sqrt_price_x96: int
    tick: int
    liquidity: int
    fee_growth_global0: int
    fee_growth_global1: int
    fee_growth_outside0_lower: int
    fee_growth_outside1_lower: int
    fee_growth_outside0_upper: int
    fee_growth_outside1_upper: int
    block: Optional[int] = None


@dataclass(frozen=True)
class TokenMeta:
    address: str
    symbol: str
    decimals: int


@dataclass(frozen=True)
class MintData:
    """Initial deposit of a position, from its mint transaction."""

    token_id: int
    block: int
    timestamp: int
    tx_hash: str
    liquidity: int
    amount0: int
    amount1: int


def parse_positions_result(token_id: int, result: str) -> OnchainPosition:
    """
    Decode NonfungiblePositionManager.positions(uint256 tokenId).

    Returns 12 fields per the contract ABI:
      (nonce, operator, token0, token1, fee, tickLower, tickUpper,
       liquidity, feeGrowthInside0LastX128, feeGrowthInside1LastX128,
       tokensOwed0, tokensOwed1)
    """
    return OnchainPosition(
        token_id=token_id,
        token0=_decode_address(result, 2),
        token1=_decode_address(result, 3),
        fee=_decode_uint(result, 4),
        tick_lower=_decode_int(result, 5),
        tick_upper=_decode_int(result, 6),
        liquidity=_decode_uint(result, 7),
        fee_growth_inside0_last=_decode_uint(result, 8),
        fee_growth_inside1_last=_decode_uint(result, 9),
        tokens_owed0=_decode_uint(result, 10),
        tokens_owed1=_decode_uint(result, 11),
    )


# ── Position Reader ─────────────────────────────────────────────────────

class PositionReader:
    """
    Read-only access to position manager, pools, tokens and farm.

    Usage:
        reader = PositionReader("https://mainnet.base.org")       # PancakeSwap V3 on Base
        pos = await reader.read_position(1234567)
        pool = await reader.resolve_pool_address(pos.token0, pos.token1, pos.fee)
        state = await reader.read_pool_state(pool, pos.tick_lower, pos.tick_upper)
    """

    def __init__(
        self,
        rpc_url: str,
        network: str = "base",
        dex_slug: str = "pancakeswap_v3",
        timeout: int = 20,
    ):
        dex = get_dex_config(dex_slug, network)
        if dex is None:
            raise ValueError(f"DEX {dex_slug} is not deployed on {network}")
        self.rpc_url = rpc_url
        self.network = network
        self.dex_slug = dex_slug
        self.dex_name = dex["name"]
        self.timeout = timeout
        self.position_manager = dex["position_manager"]
        self.factory = dex["factory"]
        self.farm = dex["farm"]
        self.reward_token = dex["reward_token"]
        self.reward_symbol = dex["reward_symbol"]
        self._token_cache: Dict[str, TokenMeta] = {}
        self._timestamp_cache: Dict[int, int] = {}

    async def block_number(self) -> int:
        return await _eth_block_number(self.rpc_url, timeout=self.timeout)

    async def block_timestamp(self, block: int) -> int:
        if block not in self._timestamp_cache:
            self._timestamp_cache[block] = await _eth_get_block_timestamp(
                self.rpc_url, block, timeout=self.timeout
            )
        return self._timestamp_cache[block]

    # ── Position manager ─────────────────────────────────────────────

    async def read_position(self, token_id: int) -> OnchainPosition:
        if token_id < 0:
            raise ValueError(f"token_id must be non-negative, got {token_id}")
        calldata = SELECTORS["positions"] + _encode_uint256(token_id)
        result = await _eth_call(self.rpc_url, self.position_manager, calldata, timeout=self.timeout)
        return parse_positions_result(token_id, result)

    async def owner_of(self, token_id: int, block: Optional[int] = None) -> str:
        calldata = SELECTORS["ownerOf"] + _encode_uint256(token_id)
        result = await _eth_call(
            self.rpc_url, self.position_manager, calldata, timeout=self.timeout, block=block
        )
        return _decode_address(result, 0)

    async def pending_reward(self, token_id: int) -> int:
        """Unclaimed farm reward (raw units), 0 without a farm."""
        if not self.farm:
            return 0
        calldata = SELECTORS["pendingCake"] + _encode_uint256(token_id)
        result = await _eth_call(self.rpc_url, self.farm, calldata, timeout=self.timeout)
        return _decode_uint(result, 0)

    # ── Factory / pool ───────────────────────────────────────────────

    async def resolve_pool_address(self, token0: str, token1: str, fee: int) -> str:
        """
        Resolve pool address from Factory.getPool(token0, token1, fee).

        Ref: https://github.com/Uniswap/v3-core/blob/main/contracts/UniswapV3Factory.sol
        """
        calldata = (
            SELECTORS["getPool"]
            + _encode_address(token0)
            + _encode_address(token1)
            + _encode_uint24(fee)
        )
        result = await _eth_call(self.rpc_url, self.factory, calldata, timeout=self.timeout)
        pool = _decode_address(result, 0)
        if pool == ZERO_ADDRESS:
            raise RuntimeError(
                f"Pool not found for {token0[:10]}.../{token1[:10]}... fee={fee}. "
                f"The position may be on a different network."
            )
        return pool

    async def read_pool_state(
        self, pool: str, tick_lower: int, tick_upper: int, block: Optional[int] = None
    ) -> PoolState:
        """
        Batch read of slot0, liquidity, global fee growth and both boundary ticks.

        ticks() returns: liquidityGross[0], liquidityNet[1],
          feeGrowthOutside0X128[2], feeGrowthOutside1X128[3], ...
        """
        calls = [
            (pool, SELECTORS["slot0"]),
            (pool, SELECTORS["liquidity"]),
            (pool, SELECTORS["feeGrowthGlobal0X128"]),
            (pool, SELECTORS["feeGrowthGlobal1X128"]),
            (pool, SELECTORS["ticks"] + _encode_int24(tick_lower)),
            (pool, SELECTORS["ticks"] + _encode_int24(tick_upper)),
        ]
        results = await self._call_many(calls, block)
        if any(not r for r in results):
            raise RuntimeError(f"Incomplete pool state for {pool} at block {block or 'latest'}")

        slot0, liq, fg0, fg1, lower, upper = results
        return PoolState(
            address=pool,
            sqrt_price_x96=_decode_uint(slot0, 0),
            tick=_decode_int(slot0, 1),
            liquidity=_decode_uint(liq, 0),
            fee_growth_global0=_decode_uint(fg0, 0),
            fee_growth_global1=_decode_uint(fg1, 0),
            fee_growth_outside0_lower=_decode_uint(lower, 2),
            fee_growth_outside1_lower=_decode_uint(lower, 3),
            fee_growth_outside0_upper=_decode_uint(upper, 2),
            fee_growth_outside1_upper=_decode_uint(upper, 3),
            block=block,
        )

    async def token_metadata(self, address: str) -> TokenMeta:
        """ERC-20 symbol and decimals (memoized per address)."""
        key = address.lower()
        if key not in self._token_cache:
            decimals_raw, symbol_raw = await self._call_many(
                [(address, SELECTORS["decimals"]), (address, SELECTORS["symbol"])]
            )
            if not decimals_raw:
                raise RuntimeError(f"decimals() failed for token {address}")
            symbol = _normalize_symbol(_decode_string(symbol_raw)) if symbol_raw else "UNK"
            self._token_cache[key] = TokenMeta(address, symbol, _decode_uint(decimals_raw, 0))
        return self._token_cache[key]

    async def _call_many(self, calls: List[tuple], block: Optional[int] = None) -> List[str]:
        try:
            return await _eth_call_batch(self.rpc_url, calls, timeout=self.timeout, block=block)
        except Exception as exc:  # noqa: BLE001
            # Fallback to sequential calls if batch not supported
            logger.debug("Batch eth_call unsupported (%s), falling back to sequential", exc)
            results = []
            for to, data in calls:
                try:
                    results.append(
                        await _eth_call(self.rpc_url, to, data, timeout=self.timeout, block=block)
                    )
                except RuntimeError as call_exc:
                    logger.warning("eth_call to %s failed: %s", to, call_exc)
                    results.append("")
            return results

    # ── Mint discovery ───────────────────────────────────────────────

    async def _exists_at(self, token_id: int, block: int) -> bool:
        try:
            await self.owner_of(token_id, block=block)
            return True
        except RuntimeError as exc:
            message = str(exc).lower()
            if any(marker in message for marker in _NOT_MINTED_MARKERS):
                return False
            raise

    async def find_mint_block(self, token_id: int, latest: Optional[int] = None) -> int:
        """Earliest block at which ownerOf(token_id) succeeds (binary search)."""
        low = 1
        high = latest if latest is not None else await self.block_number()
        mint_block = None
        while low <= high:
            mid = (low + high) // 2
            if await self._exists_at(token_id, mid):
                mint_block = mid
                high = mid - 1
            else:
                low = mid + 1
        if mint_block is None:
            raise MintDataNotFound(f"Mint block not found for token {token_id}")
        return mint_block

    async def find_mint_data(self, token_id: int) -> MintData:
        """
        Locate the mint of ``token_id`` and its initial deposit.

        Raises:
            MintDataNotFound: No mint block, mint Transfer or IncreaseLiquidity.
        """
        mint_block = await self.find_mint_block(token_id)
        logger.info("Token %s minted in block %s", token_id, mint_block)

        token_topic = _topic_uint256(token_id)
        zero_topic = "0x" + _encode_address(ZERO_ADDRESS)
        logs = await _eth_get_logs(
            self.rpc_url,
            self.position_manager,
            [TOPICS["Transfer"], zero_topic, None, token_topic],
            mint_block,
            mint_block,
            timeout=self.timeout,
        )
        if not logs:
            raise MintDataNotFound(f"No mint Transfer for token {token_id} in block {mint_block}")

        tx_hash = logs[0]["transactionHash"]
        receipt = await _eth_get_transaction_receipt(self.rpc_url, tx_hash, timeout=self.timeout)
        for log in receipt.get("logs", []):
            topics = [t.lower() for t in log.get("topics", [])]
            if (
                log.get("address", "").lower() == self.position_manager.lower()
                and len(topics) >= 2
                and topics[0] == TOPICS["IncreaseLiquidity"]
                and topics[1] == token_topic
            ):
                data = _strip_0x(log["data"])
                return MintData(
                    token_id=token_id,
                    block=mint_block,
                    timestamp=await self.block_timestamp(mint_block),
                    tx_hash=tx_hash,
                    liquidity=_decode_uint(data, 0),
                    amount0=_decode_uint(data, 1),
                    amount1=_decode_uint(data, 2),
                )
        raise MintDataNotFound(f"No IncreaseLiquidity for token {token_id} in {tx_hash}")
