#!/usr/bin/env python3
"""
Position Event Scanner
======================

Recovers the history of one position between a start block and the chain
head from raw logs:

  NonfungiblePositionManager (topic1 = tokenId)
    IncreaseLiquidity → "Deposit"
    DecreaseLiquidity → "Withdrawal"
    Collect           → "Fee Claim (Tokens)"

  MasterChef V3 farm (topic1 = owner, topic2 = tokenId)
    Deposit           → "Deposit (Staked)"
    Withdraw          → "Withdrawal (Unstaked)"

  Reward token (topic1 = farm, topic2 = owner)
    Transfer          → "Fee Claim (CAKE)"

The range is split into chunks of ``chunk_size`` blocks (providers cap
eth_getLogs ranges, 500 blocks on most free tiers). Chunks run
``concurrency`` at a time with a pause between batches. A failing query
is logged and its events omitted: the scan is best-effort.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

import httpx

from lp_tracker.rpc_helpers import (
    TOPICS,
    decode_uint as _decode_uint,
    strip_0x as _strip_0x,
    topic_address as _topic_address,
    topic_uint256 as _topic_uint256,
    eth_get_logs as _eth_get_logs,
)
from position_reader import PositionReader
from valuation_engine import to_human

logger = logging.getLogger(__name__)

EVENT_DEPOSIT = "Deposit"
EVENT_WITHDRAWAL = "Withdrawal"
EVENT_FEE_CLAIM = "Fee Claim (Tokens)"
EVENT_STAKE = "Deposit (Staked)"
EVENT_UNSTAKE = "Withdrawal (Unstaked)"

_NPM_EVENT_TYPES = {
    TOPICS["IncreaseLiquidity"]: EVENT_DEPOSIT,
    TOPICS["DecreaseLiquidity"]: EVENT_WITHDRAWAL,
    TOPICS["Collect"]: EVENT_FEE_CLAIM,
}
_FARM_EVENT_TYPES = {
    TOPICS["Deposit"]: EVENT_STAKE,
    TOPICS["Withdraw"]: EVENT_UNSTAKE,
}


def reward_event_type(reward_symbol: str) -> str:
    return f"Fee Claim ({reward_symbol})"


def _fmt(amount: Decimal) -> str:
    return f"{amount.normalize():f}"


@dataclass(frozen=True)
class PositionEvent:
    """One recorded on-chain action of a position. Immutable once recorded."""

    token_id: int
    event_type: str
    timestamp: int
    details: str
    block: int
    tx_hash: str
    log_index: int
    amount0: Optional[Decimal] = None
    amount1: Optional[Decimal] = None
    reward_amount: Optional[Decimal] = None
    liquidity: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("amount0", "amount1", "reward_amount"):
            if data[key] is not None:
                data[key] = str(data[key])
        return data


@dataclass
class ScanResult:
    events: List[PositionEvent]
    end_block: int


@dataclass(frozen=True)
class _ScanContext:
    token_id: int
    owner: Optional[str]
    decimals0: int
    decimals1: int
    symbol0: str
    symbol1: str
    rewards: bool = True


class EventScanner:
    """
    Chunked, bounded-concurrency log scanner for one position.

    Usage:
        scanner = EventScanner(reader, owner="0x...")
        result = await scanner.scan(token_id, start_block, 18, 6, "WETH", "USDC")
    """

    def __init__(
        self,
        reader: PositionReader,
        owner: Optional[str] = None,
        chunk_size: int = 499,
        concurrency: int = 10,
        batch_delay: float = 0.2,
        reward_decimals: int = 18,
    ):
        if chunk_size < 1 or concurrency < 1:
            raise ValueError("chunk_size and concurrency must be positive")
        self.reader = reader
        self.owner = owner
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self.batch_delay = batch_delay
        self.reward_decimals = reward_decimals

    def chunk_ranges(self, start_block: int, end_block: int) -> List[Tuple[int, int]]:
        """Inclusive [from, to] block ranges covering start..end, ascending."""
        return [
            (lo, min(lo + self.chunk_size - 1, end_block))
            for lo in range(start_block, end_block + 1, self.chunk_size)
        ]

    async def scan(
        self,
        token_id: int,
        start_block: int,
        decimals0: int,
        decimals1: int,
        symbol0: str,
        symbol1: str,
        owner: Optional[str] = None,
        rewards: bool = True,
    ) -> ScanResult:
        """
        Events of ``token_id`` from ``start_block`` to the chain head.

        ``rewards=False`` skips the farm to owner reward Transfer query; those
        transfers carry no token id, so only staked positions should claim them.
        """
        current_block = await self.reader.block_number()
        if start_block > current_block:
            logger.debug(
                "No new blocks for token %s (start %s > head %s)", token_id, start_block, current_block
            )
            return ScanResult([], current_block)

        ctx = _ScanContext(
            token_id, owner or self.owner, decimals0, decimals1, symbol0, symbol1, rewards
        )
        ranges = self.chunk_ranges(start_block, current_block)
        logger.info(
            "Scanning token %s blocks %s-%s in %d chunks", token_id, start_block, current_block, len(ranges)
        )

        events: List[PositionEvent] = []
        for i in range(0, len(ranges), self.concurrency):
            batch = ranges[i:i + self.concurrency]
            results = await asyncio.gather(*(self._scan_chunk(ctx, lo, hi) for lo, hi in batch))
            for chunk_events in results:
                events.extend(chunk_events)
            if i + self.concurrency < len(ranges):
                await asyncio.sleep(self.batch_delay)

        return ScanResult(sorted(events, key=lambda e: e.timestamp), current_block)

    # ── Per-chunk queries ────────────────────────────────────────────

    async def _get_logs(self, label: str, address: str, topics: list, lo: int, hi: int) -> List[dict]:
        try:
            logs = await _eth_get_logs(
                self.reader.rpc_url, address, topics, lo, hi, timeout=self.reader.timeout
            )
        except (RuntimeError, httpx.HTTPError, ValueError) as exc:
            logger.error("Error fetching %s logs for blocks %s to %s: %s", label, lo, hi, exc)
            return []
        logger.debug("Fetched %d %s logs for blocks %s to %s", len(logs), label, lo, hi)
        return [log for log in logs if not log.get("removed")]

    async def _scan_chunk(self, ctx: _ScanContext, lo: int, hi: int) -> List[PositionEvent]:
        token_topic = _topic_uint256(ctx.token_id)
        found: List[Tuple[str, dict]] = []

        npm_logs = await self._get_logs(
            "PositionManager",
            self.reader.position_manager,
            [list(_NPM_EVENT_TYPES), token_topic],
            lo, hi,
        )
        found.extend(("npm", log) for log in npm_logs)

        farm = self.reader.farm
        if farm and ctx.owner:
            owner_topic = _topic_address(ctx.owner)
            farm_logs = await self._get_logs(
                "MasterChef", farm, [list(_FARM_EVENT_TYPES), owner_topic, token_topic], lo, hi
            )
            found.extend(("farm", log) for log in farm_logs)

            if ctx.rewards and self.reader.reward_token:
                reward_logs = await self._get_logs(
                    "reward Transfer",
                    self.reader.reward_token,
                    [TOPICS["Transfer"], _topic_address(farm), owner_topic],
                    lo, hi,
                )
                found.extend(("reward", log) for log in reward_logs)

        events = []
        for kind, log in found:
            try:
                events.append(await self._decode(ctx, kind, log))
            except (KeyError, ValueError, RuntimeError, httpx.HTTPError) as exc:
                logger.error("Skipping undecodable %s log in block %s: %s", kind, log.get("blockNumber"), exc)
        return events

    # ── Decoding ─────────────────────────────────────────────────────

    async def _decode(self, ctx: _ScanContext, kind: str, log: dict) -> PositionEvent:
        block = int(log["blockNumber"], 16)
        common = {
            "token_id": ctx.token_id,
            "timestamp": await self.reader.block_timestamp(block),
            "block": block,
            "tx_hash": log["transactionHash"],
            "log_index": int(log.get("logIndex", "0x0"), 16),
        }
        topic0 = log["topics"][0].lower()
        data = _strip_0x(log.get("data", "0x"))

        if kind == "npm":
            event_type = _NPM_EVENT_TYPES[topic0]
            # Increase/Decrease: (liquidity, amount0, amount1)
            # Collect: (recipient, amount0, amount1)
            amount0 = to_human(_decode_uint(data, 1), ctx.decimals0)
            amount1 = to_human(_decode_uint(data, 2), ctx.decimals1)
            liquidity = _decode_uint(data, 0) if event_type != EVENT_FEE_CLAIM else None
            return PositionEvent(
                event_type=event_type,
                details=f"{_fmt(amount0)} {ctx.symbol0} / {_fmt(amount1)} {ctx.symbol1}",
                amount0=amount0,
                amount1=amount1,
                liquidity=liquidity,
                **common,
            )

        if kind == "farm":
            liquidity = _decode_uint(data, 0)
            return PositionEvent(
                event_type=_FARM_EVENT_TYPES[topic0],
                details=str(liquidity),
                liquidity=liquidity,
                **common,
            )

        symbol = self.reader.reward_symbol or "REWARD"
        amount = to_human(_decode_uint(data, 0), self.reward_decimals)
        return PositionEvent(
            event_type=reward_event_type(symbol),
            details=f"{_fmt(amount)} {symbol}",
            reward_amount=amount,
            **common,
        )
