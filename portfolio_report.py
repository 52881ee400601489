#!/usr/bin/env python3
"""
Portfolio Report Pipeline
=========================

Builds the wallet report served by web_app.py and rendered by
html_generator.py / the CLI.

Per wallet:
  1. PositionIndexer      → active token ids (held + staked)
  2. per position, sequentially:
     a. PositionReader    → position, pool now, token metadata, farm reward
     b. ensure_snapshot   → cached mint snapshot, or mint discovery + pool
                            state at the mint block, stored once
     c. sync_events       → EventScanner from the cache checkpoint, store
                            new events, advance the checkpoint
     d. DexScreenerClient → USD prices (token0, token1, reward token)
     e. valuation_engine  → amounts, fees, rewards, yield, IL, breakeven
  3. totals

A failing position is logged and skipped; only DataSourceUnavailable
(the wallet cannot be enumerated) aborts the report.
"""

import logging
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from lp_tracker.central_config import PROJECT_VERSION, Settings, get_settings
from lp_tracker.dexscreener_client import DexScreenerClient
from lp_tracker.stablecoins import quote_side
from lp_tracker.subgraph_client import SubgraphClient
from event_scanner import (
    EVENT_FEE_CLAIM,
    EVENT_WITHDRAWAL,
    EventScanner,
    PositionEvent,
    reward_event_type,
)
from position_cache import PositionCache, PositionSnapshot
from position_indexer import DataSourceUnavailable, PositionIndexer
from position_reader import (
    MintDataNotFound,
    OnchainPosition,
    PositionReader,
    TokenMeta,
)
import valuation_engine as ve

logger = logging.getLogger(__name__)

_ZERO = Decimal(0)
_HUNDRED = Decimal(100)


def _f(value: Optional[Decimal], places: Optional[int] = None) -> Optional[float]:
    """Decimal → float for the JSON report (None passes through)."""
    if value is None:
        return None
    return round(float(value), places) if places is not None else float(value)


def _amount(value: Optional[Decimal]) -> Optional[str]:
    """Token amount as an exact decimal string; display rounding is left to the renderer."""
    if value is None:
        return None
    return format(value.normalize(), "f")


def _unavailable(reason: str) -> Dict[str, Any]:
    return {"available": False, "reason": reason}


def _usd(amount: Decimal, price: Optional[Decimal]) -> Optional[Decimal]:
    return amount * price if price is not None else None


def _sum_usd(*values: Optional[Decimal]) -> Optional[Decimal]:
    if any(v is None for v in values):
        return None
    return sum(values, _ZERO)


def oriented_bounds(tick_lower: int, tick_upper: int, meta0: TokenMeta, meta1: TokenMeta, quote: int):
    """(lower, upper) range bounds as quote per base."""
    p_lower = ve.tick_to_price(tick_lower, meta0.decimals, meta1.decimals)
    p_upper = ve.tick_to_price(tick_upper, meta0.decimals, meta1.decimals)
    if quote == 1:
        return p_lower, p_upper
    return ve.orient_price(p_upper, 0), ve.orient_price(p_lower, 0)


def claimed_fees(events: List[PositionEvent]) -> tuple[Decimal, Decimal]:
    """
    Swap fees already collected: Σ Collect − Σ DecreaseLiquidity per token.

    Collect also pays out withdrawn principal, which DecreaseLiquidity
    credited first; the difference is the fee part, floored at zero.
    """
    collected0 = collected1 = withdrawn0 = withdrawn1 = _ZERO
    for ev in events:
        if ev.event_type == EVENT_FEE_CLAIM:
            collected0 += ev.amount0 or _ZERO
            collected1 += ev.amount1 or _ZERO
        elif ev.event_type == EVENT_WITHDRAWAL:
            withdrawn0 += ev.amount0 or _ZERO
            withdrawn1 += ev.amount1 or _ZERO
    return max(collected0 - withdrawn0, _ZERO), max(collected1 - withdrawn1, _ZERO)


def claimed_rewards(events: List[PositionEvent], reward_symbol: Optional[str]) -> Decimal:
    if not reward_symbol:
        return _ZERO
    kind = reward_event_type(reward_symbol)
    return sum((ev.reward_amount or _ZERO for ev in events if ev.event_type == kind), _ZERO)


def _bound_report(point: ve.ILPoint, be: ve.Breakeven) -> Dict[str, Any]:
    if be.status == "met":
        breakeven_time = "Met"
    elif be.status == "pending":
        breakeven_time = ve.format_duration(be.remaining_seconds)
    else:
        breakeven_time = "N/A"
    return {
        "price": _f(point.price),
        "il_usd": _f(point.il_usd, 2),
        "il_perc": _f(point.il_perc, 2),
        "breakeven_status": be.status,
        "breakeven_time": breakeven_time,
        "breakeven_time_perc": _f(be.remaining_perc, 1),
        "fees_vs_il": _f(be.rewards_vs_il_perc, 1),
        "fees_vs_il_net": _f(be.net_usd, 2),
    }


def il_report(analysis: ve.ILAnalysis) -> Dict[str, Any]:
    return {
        "available": True,
        "position_age": ve.format_duration(analysis.position_age_seconds),
        "position_age_seconds": analysis.position_age_seconds,
        "liquidity_warning": analysis.liquidity.warning,
        "liquidity_divergence_perc": _f(analysis.liquidity.divergence * _HUNDRED, 4),
        "current": {
            "price": _f(analysis.current.price),
            "il_usd": _f(analysis.current.il_usd, 2),
            "il_perc": _f(analysis.current.il_perc, 2),
            "net_gain_loss": _f(analysis.net_gain_loss_usd, 2),
        },
        "upper_bound": _bound_report(analysis.upper, analysis.upper_breakeven),
        "lower_bound": _bound_report(analysis.lower, analysis.lower_breakeven),
    }


class PortfolioReporter:
    """
    Wallet report builder. Every collaborator is passed in; use
    ``from_settings()`` for the default wiring.
    """

    def __init__(
        self,
        reader: PositionReader,
        indexer: PositionIndexer,
        scanner: EventScanner,
        cache: PositionCache,
        prices: DexScreenerClient,
        settings: Settings,
        subgraph: Optional[SubgraphClient] = None,
    ):
        self.reader = reader
        self.indexer = indexer
        self.scanner = scanner
        self.cache = cache
        self.prices = prices
        self.settings = settings
        self.subgraph = subgraph

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "PortfolioReporter":
        settings = settings or get_settings()
        reader = PositionReader(
            settings.RPC_URL, settings.NETWORK, settings.DEX, timeout=settings.RPC_TIMEOUT
        )
        subgraph = SubgraphClient(settings.subgraph_url, settings.THEGRAPH_API_KEY)
        return cls(
            reader=reader,
            indexer=PositionIndexer(reader, subgraph if reader.farm and subgraph.url else None),
            scanner=EventScanner(
                reader,
                chunk_size=settings.SCAN_CHUNK_SIZE,
                concurrency=settings.SCAN_CONCURRENCY,
                batch_delay=settings.SCAN_BATCH_DELAY,
            ),
            cache=PositionCache(settings.CACHE_DB_PATH),
            prices=DexScreenerClient(settings.NETWORK),
            settings=settings,
            subgraph=subgraph,
        )

    def close(self):
        self.cache.close()

    # ── Memoized mint snapshot ───────────────────────────────────────

    async def ensure_snapshot(
        self,
        position: OnchainPosition,
        pool_address: str,
        meta0: TokenMeta,
        meta1: TokenMeta,
        quote_usd: Optional[Decimal] = None,
    ) -> PositionSnapshot:
        """
        Cached mint snapshot of ``position``; computed and stored on first sight.

        Raises:
            MintDataNotFound: The mint cannot be located on chain.
        """
        cached = self.cache.get_snapshot(position.token_id)
        if cached is not None:
            return cached

        mint = await self.reader.find_mint_data(position.token_id)
        pool_at_mint = await self.reader.read_pool_state(
            pool_address, position.tick_lower, position.tick_upper, block=mint.block
        )
        quote = quote_side(meta0.symbol, meta1.symbol)
        entry_price = ve.orient_price(
            ve.sqrt_price_x96_to_price(pool_at_mint.sqrt_price_x96, meta0.decimals, meta1.decimals),
            quote,
        )
        amount0 = ve.to_human(mint.amount0, meta0.decimals)
        amount1 = ve.to_human(mint.amount1, meta1.decimals)
        base_amount, quote_amount = (amount1, amount0) if quote == 0 else (amount0, amount1)
        opening_usd = None
        if quote_usd is not None:
            opening_usd = ve.hold_value(base_amount, quote_amount, entry_price) * quote_usd

        snapshot = PositionSnapshot(
            token_id=position.token_id,
            token0=position.token0,
            token1=position.token1,
            fee=position.fee,
            tick_lower=position.tick_lower,
            tick_upper=position.tick_upper,
            amount0=mint.amount0,
            amount1=mint.amount1,
            mint_block=mint.block,
            mint_timestamp=mint.timestamp,
            mint_tx_hash=mint.tx_hash,
            quote_side=quote,
            entry_price=entry_price,
            opening_usd=opening_usd,
        )
        logger.info("Stored mint snapshot for token %s (block %s)", position.token_id, mint.block)
        return self.cache.save_snapshot(snapshot)

    async def sync_events(
        self,
        snapshot: PositionSnapshot,
        position: OnchainPosition,
        meta0: TokenMeta,
        meta1: TokenMeta,
    ) -> List[PositionEvent]:
        """Scan from the checkpoint to the head, persist, return every stored event."""
        last = self.cache.get_last_scanned_block(snapshot.token_id)
        start = last + 1 if last is not None else snapshot.mint_block
        result = await self.scanner.scan(
            snapshot.token_id,
            start,
            meta0.decimals,
            meta1.decimals,
            meta0.symbol,
            meta1.symbol,
            owner=position.owner or None,
            rewards=position.staked,
        )
        added = self.cache.add_events(result.events)
        self.cache.advance_checkpoint(snapshot.token_id, result.end_block)
        logger.info(
            "Token %s: %d new events, checkpoint at block %s", snapshot.token_id, added, result.end_block
        )
        return self.cache.get_events(snapshot.token_id)

    # ── Report ───────────────────────────────────────────────────────

    async def build_report(self, wallet: str) -> Dict[str, Any]:
        """
        Full report for ``wallet``.

        Raises:
            DataSourceUnavailable: The wallet cannot be enumerated.
        """
        index = await self.indexer.index(wallet)
        if not index.token_ids:
            return {"message": f"No active positions found for wallet {wallet}"}

        try:
            block = await self.reader.block_number()
        except RuntimeError as exc:
            raise DataSourceUnavailable(f"Cannot read chain head: {exc}") from exc

        positions: List[Dict[str, Any]] = []
        skipped: List[int] = []
        for token_id in index.token_ids:
            try:
                report = await self.build_position_report(token_id, wallet, index.staked.get(token_id))
            except Exception:  # noqa: BLE001
                logger.exception("Position %s failed, skipping", token_id)
                skipped.append(token_id)
                continue
            if report is not None:
                positions.append(report)

        if not positions and not skipped:
            return {"message": f"No active positions found for wallet {wallet}"}

        total_value = sum(
            (Decimal(str(p["estimated_value_usd"])) for p in positions if p["estimated_value_usd"] is not None),
            _ZERO,
        )
        daily = annual = _ZERO
        for p in positions:
            if p["yield"]["available"]:
                daily += Decimal(str(p["yield"]["daily_projected_usd"]))
                annual += Decimal(str(p["yield"]["annual_projected_usd"]))

        return {
            "wallet": wallet,
            "network": self.settings.NETWORK,
            "chain_id": self.settings.CHAIN_ID,
            "dex": self.reader.dex_name,
            "block": block,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "version": PROJECT_VERSION,
            "total_portfolio_value": _f(total_value, 2),
            "num_active_positions": len(positions),
            "total_daily_projected_usd_earnings": _f(daily, 2),
            "total_annual_projected_usd_earnings": _f(annual, 2),
            "total_annual_yield": _f(annual / total_value * _HUNDRED, 2) if total_value > 0 else None,
            "positions": positions,
            "skipped_positions": skipped,
        }

    async def build_position_report(
        self, token_id: int, wallet: str, staked_record: Optional[dict] = None
    ) -> Optional[Dict[str, Any]]:
        """Report for one position, or None when it is closed."""
        position = await self.reader.read_position(token_id)
        if position.closed:
            logger.info("Position %s has zero liquidity, skipping", token_id)
            return None
        position.owner = wallet
        position.staked = bool(staked_record and staked_record.get("isStaked"))

        pool_address = None
        if staked_record:
            pool_address = (staked_record.get("pool") or {}).get("v3Pool")
            position.subgraph_earned = int(staked_record.get("earned") or 0)
        if not pool_address:
            pool_address = await self.reader.resolve_pool_address(
                position.token0, position.token1, position.fee
            )
        position.pool_hint = pool_address

        meta0 = await self.reader.token_metadata(position.token0)
        meta1 = await self.reader.token_metadata(position.token1)
        pool = await self.reader.read_pool_state(pool_address, position.tick_lower, position.tick_upper)

        reward_meta = None
        if self.reader.farm and self.reader.reward_token:
            reward_meta = await self.reader.token_metadata(self.reader.reward_token)
            if position.staked:
                try:
                    position.pending_reward = await self.reader.pending_reward(token_id)
                except RuntimeError as exc:
                    logger.warning("pendingCake(%s) failed: %s", token_id, exc)

        symbols = {meta0.address.lower(): meta0.symbol, meta1.address.lower(): meta1.symbol}
        addresses = [meta0.address, meta1.address]
        if reward_meta is not None:
            addresses.append(reward_meta.address)
            symbols[reward_meta.address.lower()] = reward_meta.symbol
        prices = await self.prices.get_token_prices(addresses, symbols)
        price0 = prices.get(meta0.address.lower())
        price1 = prices.get(meta1.address.lower())
        reward_price = prices.get(reward_meta.address.lower()) if reward_meta else None

        quote = quote_side(meta0.symbol, meta1.symbol)
        base_meta, quote_meta = (meta1, meta0) if quote == 0 else (meta0, meta1)
        quote_usd = price0 if quote == 0 else price1

        snapshot = None
        events: List[PositionEvent] = []
        try:
            snapshot = await self.ensure_snapshot(position, pool_address, meta0, meta1, quote_usd)
        except MintDataNotFound as exc:
            logger.warning("Token %s: %s", token_id, exc)
        if snapshot is not None:
            events = await self.sync_events(snapshot, position, meta0, meta1)

        # ── Current state ──
        raw0, raw1 = ve.amounts_for_liquidity(
            position.liquidity, pool.sqrt_price_x96, pool.tick, position.tick_lower, position.tick_upper
        )
        amount0 = ve.to_human(raw0, meta0.decimals)
        amount1 = ve.to_human(raw1, meta1.decimals)
        fee_raw0, fee_raw1 = ve.position_fees(position, pool)
        fees0 = ve.to_human(fee_raw0, meta0.decimals)
        fees1 = ve.to_human(fee_raw1, meta1.decimals)

        current_price = ve.orient_price(
            ve.sqrt_price_x96_to_price(pool.sqrt_price_x96, meta0.decimals, meta1.decimals), quote
        )
        price_lower, price_upper = oriented_bounds(
            position.tick_lower, position.tick_upper, meta0, meta1, quote
        )
        in_range = position.tick_lower <= pool.tick < position.tick_upper

        value_usd = _sum_usd(_usd(amount0, price0), _usd(amount1, price1))
        unclaimed_usd = _sum_usd(_usd(fees0, price0), _usd(fees1, price1))
        claimed0, claimed1 = claimed_fees(events)
        claimed_usd = _sum_usd(_usd(claimed0, price0), _usd(claimed1, price1))

        rewards = None
        reward_usd = _ZERO
        if reward_meta is not None:
            pending = ve.to_human(position.pending_reward, reward_meta.decimals)
            claimed_reward = claimed_rewards(events, self.reader.reward_symbol)
            reward_usd = _usd(pending + claimed_reward, reward_price)
            rewards = {
                "symbol": reward_meta.symbol,
                "pending": _amount(pending),
                "claimed": _amount(claimed_reward),
                "subgraph_earned": _amount(ve.to_human(position.subgraph_earned, reward_meta.decimals)),
                "price_usd": _f(reward_price),
                "usd": _f(reward_usd, 2),
            }
        total_rewards_usd = _sum_usd(unclaimed_usd, claimed_usd, reward_usd)

        # ── Yield & IL ──
        elapsed = 0
        if snapshot is not None:
            elapsed = max(int(time.time()) - snapshot.mint_timestamp, 0)

        if snapshot is None:
            yield_section = _unavailable("mint data not found")
        elif total_rewards_usd is None:
            yield_section = _unavailable("missing USD price")
        else:
            projection = ve.yield_projection(total_rewards_usd, elapsed, snapshot.opening_usd)
            yield_section = {
                "available": True,
                "rewards_per_second_usd": _f(projection.rewards_per_second),
                "daily_projected_usd": _f(projection.daily_usd, 2),
                "annual_projected_usd": _f(projection.annual_usd, 2),
                "annualized_apr": _f(projection.apr_perc, 2),
            }

        if snapshot is None:
            il_section = _unavailable("mint data not found")
        elif quote_usd is None:
            il_section = _unavailable(f"no USD price for {quote_meta.symbol}")
        else:
            entry0 = ve.to_human(snapshot.amount0, meta0.decimals)
            entry1 = ve.to_human(snapshot.amount1, meta1.decimals)
            base_amount, quote_amount = (entry1, entry0) if quote == 0 else (entry0, entry1)
            try:
                analysis = ve.analyze_impermanent_loss(
                    base_amount, quote_amount, snapshot.entry_price, current_price,
                    price_lower, price_upper, quote_usd, total_rewards_usd or _ZERO, elapsed,
                )
                il_section = il_report(analysis)
            except ValueError as exc:
                logger.warning("IL for token %s unavailable: %s", token_id, exc)
                il_section = _unavailable(str(exc))

        if snapshot is None:
            initial_state = _unavailable("mint data not found")
        else:
            initial_state = {
                "available": True,
                "price": _f(snapshot.entry_price),
                "usd_value": _f(snapshot.opening_usd, 2),
                "balances": {
                    "token0": _amount(ve.to_human(snapshot.amount0, meta0.decimals)),
                    "token1": _amount(ve.to_human(snapshot.amount1, meta1.decimals)),
                },
                "date": datetime.fromtimestamp(snapshot.mint_timestamp, timezone.utc).isoformat(),
                "block": snapshot.mint_block,
                "tx_hash": snapshot.mint_tx_hash,
            }

        span = price_upper - price_lower
        inside = (current_price - price_lower) / span * _HUNDRED if span > 0 else _ZERO
        return {
            "token_id": token_id,
            "pair": f"{meta0.symbol}/{meta1.symbol}",
            "dex": self.reader.dex_name,
            "fee_tier": position.fee / 10_000,
            "staked": position.staked,
            "pool_address": pool_address,
            "status": "IN RANGE" if in_range else "OUT OF RANGE",
            "in_range": in_range,
            "token0": {"address": meta0.address, "symbol": meta0.symbol, "price_usd": _f(price0)},
            "token1": {"address": meta1.address, "symbol": meta1.symbol, "price_usd": _f(price1)},
            "price_label": f"{quote_meta.symbol} per {base_meta.symbol}",
            "current_price": _f(current_price),
            "price_range_lower": _f(price_lower),
            "price_range_upper": _f(price_upper),
            "perc_to_lower": _f((current_price - price_lower) / current_price * _HUNDRED, 2) if current_price else None,
            "perc_to_upper": _f((price_upper - current_price) / current_price * _HUNDRED, 2) if current_price else None,
            "price_range_percentage": _f(min(max(inside, _ZERO), _HUNDRED), 1),
            "current_balances": {"token0": _amount(amount0), "token1": _amount(amount1)},
            "estimated_value_usd": _f(value_usd, 2),
            "unclaimed_fees": {"token0": _amount(fees0), "token1": _amount(fees1), "usd": _f(unclaimed_usd, 2)},
            "claimed_fees": {"token0": _amount(claimed0), "token1": _amount(claimed1), "usd": _f(claimed_usd, 2)},
            "rewards": rewards,
            "total_rewards_usd": _f(total_rewards_usd, 2),
            "yield": yield_section,
            "initial_state": initial_state,
            "impermanent_loss": il_section,
            "events": [ev.to_dict() for ev in events],
        }
