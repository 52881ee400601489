#!/usr/bin/env python3
"""
Position Valuation Engine
=========================

Fee accounting, liquidity ↔ amount conversion, impermanent loss and
breakeven math for concentrated-liquidity (V3) positions.

On-chain fixed-point values stay Python ``int``; every division,
multiplication and root goes through ``decimal.Decimal``. Floats never
appear here: conversion to display units happens in the report layer.

FORMULA SOURCES (every formula is traceable):
──────────────────────────────────────────────
1. Uniswap V3 Core Whitepaper
   https://uniswap.org/whitepaper-v3.pdf
   - §6.1  Tick-Indexed Concentrated Liquidity — p(i) = 1.0001^i
   - §6.2  Global State — sqrtPriceX96
   - §6.3  Per-Tick State — feeGrowthOutside
   - §6.4  Position state — feeGrowthInside, tokensOwed

2. Uniswap V3 Core — Pool.sol::_getFeeGrowthInside / Position.sol::update
   https://github.com/Uniswap/v3-core/blob/main/contracts/UniswapV3Pool.sol

3. Uniswap V3 Development Book — Calculating Liquidity
   https://uniswapv3book.com/docs/milestone_1/calculating-liquidity/
   - L = Δx / (1/√Pc − 1/√Pb)       (token0 / base side)
   - L = Δy / (√Pc − √Pa)           (token1 / quote side)

4. Impermanent loss, concentrated version
   IL(P) = LPValue(P) − HoldValue(P), both in quote units.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, getcontext
from typing import Optional, Tuple

from lp_tracker.rpc_helpers import Q96, Q128, Q256, SIGN_BIT

getcontext().prec = 80

logger = logging.getLogger(__name__)

# ── Named Constants ──────────────────────────────────────────────────────
TICK_BASE = Decimal("1.0001")          # Whitepaper Eq. 6.1
SECONDS_PER_DAY = 86_400
SECONDS_PER_YEAR = 365 * SECONDS_PER_DAY
LIQUIDITY_DIVERGENCE_LIMIT = Decimal("0.001")   # 0.1%

_ZERO = Decimal(0)
_ONE = Decimal(1)
_HUNDRED = Decimal(100)


# ── Result Types ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class LiquidityEstimate:
    """Position liquidity re-derived from the deposited amounts (human units)."""

    liquidity: Decimal
    base_estimate: Optional[Decimal]
    quote_estimate: Optional[Decimal]
    divergence: Decimal
    warning: bool


@dataclass(frozen=True)
class ILPoint:
    """Impermanent loss evaluated at one price (quote per base)."""

    price: Decimal
    lp_value: Decimal
    hold_value: Decimal
    il: Decimal                     # quote units, ≤ 0 means loss
    il_perc: Decimal                # % of hold value
    il_usd: Optional[Decimal]


@dataclass(frozen=True)
class Breakeven:
    """Time for accrued rewards to offset the IL at one price."""

    status: str                     # "met" | "pending" | "insufficient data"
    total_seconds: Optional[Decimal]
    remaining_seconds: Optional[Decimal]
    remaining_perc: Decimal         # -1 when met or not computable
    rewards_vs_il_perc: Optional[Decimal]
    net_usd: Optional[Decimal]      # rewards − |IL|


@dataclass(frozen=True)
class ILAnalysis:
    liquidity: LiquidityEstimate
    current: ILPoint
    upper: ILPoint
    lower: ILPoint
    upper_breakeven: Breakeven
    lower_breakeven: Breakeven
    position_age_seconds: int
    net_gain_loss_usd: Optional[Decimal]


@dataclass(frozen=True)
class YieldProjection:
    rewards_per_second: Optional[Decimal]
    daily_usd: Decimal
    annual_usd: Decimal
    apr_perc: Optional[Decimal]


# ── Fee Accounting ───────────────────────────────────────────────────────


def fee_growth_inside(
    tick_current: int,
    tick_lower: int,
    tick_upper: int,
    fee_growth_global: int,
    outside_lower: int,
    outside_upper: int,
) -> int:
    """
    Fee growth per unit of liquidity inside [tick_lower, tick_upper).

    Mirrors Pool.sol::_getFeeGrowthInside():
      below  = outside_lower            if tick ≥ tick_lower else global − outside_lower
      above  = outside_upper            if tick < tick_upper else global − outside_upper
      inside = global − below − above   (mod 2^256)
    """
    if tick_current >= tick_lower:
        below = outside_lower
    else:
        below = (fee_growth_global - outside_lower) % Q256

    if tick_current < tick_upper:
        above = outside_upper
    else:
        above = (fee_growth_global - outside_upper) % Q256

    return (fee_growth_global - below - above) % Q256


def uncollected_fees(
    liquidity: int, fee_growth_inside_now: int, fee_growth_inside_last: int, owed: int
) -> int:
    """
    Raw uncollected fees of one token side.

    The delta is read as a signed 256-bit value: a non-positive delta
    accrues nothing and the result is exactly ``owed``.
    """
    delta = (fee_growth_inside_now - fee_growth_inside_last) % Q256
    if delta >= SIGN_BIT:
        delta -= Q256
    if delta <= 0:
        return owed
    return delta * liquidity // Q128 + owed


def position_fees(position, pool) -> Tuple[int, int]:
    """Uncollected raw fees (token0, token1) of a position given current pool state."""
    inside0 = fee_growth_inside(
        pool.tick, position.tick_lower, position.tick_upper,
        pool.fee_growth_global0, pool.fee_growth_outside0_lower, pool.fee_growth_outside0_upper,
    )
    inside1 = fee_growth_inside(
        pool.tick, position.tick_lower, position.tick_upper,
        pool.fee_growth_global1, pool.fee_growth_outside1_lower, pool.fee_growth_outside1_upper,
    )
    return (
        uncollected_fees(position.liquidity, inside0, position.fee_growth_inside0_last, position.tokens_owed0),
        uncollected_fees(position.liquidity, inside1, position.fee_growth_inside1_last, position.tokens_owed1),
    )


# ── Liquidity ↔ Amounts ──────────────────────────────────────────────────


def sqrt_ratio_at_tick(tick: int) -> Decimal:
    """√(1.0001^tick), raw (no decimal adjustment)."""
    return (TICK_BASE ** tick).sqrt()


def amounts_for_liquidity(
    liquidity: int,
    sqrt_price_x96: int,
    tick_current: int,
    tick_lower: int,
    tick_upper: int,
) -> Tuple[int, int]:
    """
    Raw token amounts represented by ``liquidity`` at the current price.

    Formula (Whitepaper §6.2):
      Below:     amount0 = L × (√Pb − √Pa) / (√Pa × √Pb),  amount1 = 0
      In range:  amount0 = L × (√Pb − √P) / (√P × √Pb)
                 amount1 = L × (√P − √Pa)
      Above:     amount0 = 0,  amount1 = L × (√Pb − √Pa)

    Results are floored to integer units, as the pool rounds down on burn.
    """
    if liquidity == 0 or sqrt_price_x96 == 0:
        return 0, 0

    liq = Decimal(liquidity)
    sqrt_a = sqrt_ratio_at_tick(tick_lower)
    sqrt_b = sqrt_ratio_at_tick(tick_upper)
    sqrt_p = Decimal(sqrt_price_x96) / Decimal(Q96)

    if tick_current < tick_lower:
        amount0 = liq * (sqrt_b - sqrt_a) / (sqrt_a * sqrt_b)
        amount1 = _ZERO
    elif tick_current >= tick_upper:
        amount0 = _ZERO
        amount1 = liq * (sqrt_b - sqrt_a)
    else:
        amount0 = liq * (sqrt_b - sqrt_p) / (sqrt_p * sqrt_b)
        amount1 = liq * (sqrt_p - sqrt_a)

    return max(int(amount0), 0), max(int(amount1), 0)


# ── Price Helpers ────────────────────────────────────────────────────────


def to_human(raw: int, decimals: int) -> Decimal:
    """Raw integer token units → Decimal token amount."""
    return Decimal(raw).scaleb(-decimals)


def tick_to_price(tick: int, decimals0: int, decimals1: int) -> Decimal:
    """
    Tick → token1 per token0, decimal-adjusted.

    Formula (Whitepaper §6.1):
      p(i) = 1.0001^i × 10^(decimals0 − decimals1)
    """
    return (TICK_BASE ** tick).scaleb(decimals0 - decimals1)


def sqrt_price_x96_to_price(sqrt_price_x96: int, decimals0: int, decimals1: int) -> Decimal:
    """
    sqrtPriceX96 → token1 per token0, decimal-adjusted.

    Formula (Whitepaper §6.1):
      raw_price = (sqrtPriceX96 / 2^96)^2
      human_price = raw_price × 10^(decimals0 − decimals1)
    """
    if sqrt_price_x96 == 0:
        return _ZERO
    sqrt_p = Decimal(sqrt_price_x96) / Decimal(Q96)
    return (sqrt_p * sqrt_p).scaleb(decimals0 - decimals1)


def orient_price(price_1_per_0: Decimal, quote: int) -> Decimal:
    """Token1-per-token0 price re-expressed as quote per base."""
    if quote == 1:
        return price_1_per_0
    if price_1_per_0 == 0:
        return _ZERO
    return _ONE / price_1_per_0


# ── Impermanent Loss ─────────────────────────────────────────────────────


def _clamp(price: Decimal, price_lower: Decimal, price_upper: Decimal) -> Decimal:
    return min(max(price, price_lower), price_upper)


def estimate_liquidity(
    base_amount: Decimal,
    quote_amount: Decimal,
    entry_price: Decimal,
    price_lower: Decimal,
    price_upper: Decimal,
) -> LiquidityEstimate:
    """
    Re-derive position liquidity independently from each deposited side.

      L_base  = x / (1/√Pc − 1/√Pb)
      L_quote = y / (√Pc − √Pa)

    Pc is the entry price clamped into [Pa, Pb]. A side with no deposit or a
    zero denominator gives no estimate. Both estimates should agree; a
    divergence above 0.1% is logged and flagged but the mean is still used.

    Raises:
        ValueError: If neither side yields an estimate.
    """
    if price_lower <= 0 or price_upper <= price_lower:
        raise ValueError(f"Invalid price range [{price_lower}, {price_upper}]")

    pc = _clamp(entry_price, price_lower, price_upper)
    sqrt_c, sqrt_a, sqrt_b = pc.sqrt(), price_lower.sqrt(), price_upper.sqrt()

    base_estimate = None
    denom_base = _ONE / sqrt_c - _ONE / sqrt_b
    if base_amount > 0 and denom_base > 0:
        base_estimate = base_amount / denom_base

    quote_estimate = None
    denom_quote = sqrt_c - sqrt_a
    if quote_amount > 0 and denom_quote > 0:
        quote_estimate = quote_amount / denom_quote

    estimates = [e for e in (base_estimate, quote_estimate) if e is not None]
    if not estimates:
        raise ValueError("No liquidity estimate: both deposit sides are degenerate")

    liquidity = sum(estimates, _ZERO) / len(estimates)
    divergence = _ZERO
    if len(estimates) == 2 and liquidity > 0:
        divergence = abs(base_estimate - quote_estimate) / liquidity

    warning = divergence > LIQUIDITY_DIVERGENCE_LIMIT
    if warning:
        logger.warning(
            "Liquidity estimates diverge by %.4f%% (base=%s, quote=%s)",
            divergence * _HUNDRED, base_estimate, quote_estimate,
        )
    return LiquidityEstimate(liquidity, base_estimate, quote_estimate, divergence, warning)


def lp_value(
    liquidity: Decimal, price: Decimal, price_lower: Decimal, price_upper: Decimal
) -> Decimal:
    """
    Value of the LP position at ``price``, in quote units.

    Above the range everything is quote, below it everything is base.
    """
    pc = _clamp(price, price_lower, price_upper)
    sqrt_c = pc.sqrt()
    base = liquidity * (_ONE / sqrt_c - _ONE / price_upper.sqrt())
    quote = liquidity * (sqrt_c - price_lower.sqrt())
    return base * price + quote


def hold_value(base_amount: Decimal, quote_amount: Decimal, price: Decimal) -> Decimal:
    """Value of the original deposit simply held, re-priced at ``price``."""
    return base_amount * price + quote_amount


def impermanent_loss_at(
    price: Decimal,
    liquidity: Decimal,
    base_amount: Decimal,
    quote_amount: Decimal,
    price_lower: Decimal,
    price_upper: Decimal,
    quote_usd: Optional[Decimal] = None,
) -> ILPoint:
    lp = lp_value(liquidity, price, price_lower, price_upper)
    hold = hold_value(base_amount, quote_amount, price)
    il = lp - hold
    il_perc = il / hold * _HUNDRED if hold > 0 else _ZERO
    il_usd = il * quote_usd if quote_usd is not None else None
    return ILPoint(price, lp, hold, il, il_perc, il_usd)


def rewards_rate(total_rewards_usd: Decimal, elapsed_seconds) -> Optional[Decimal]:
    """USD earned per second since mint, or None without rewards or elapsed time."""
    if total_rewards_usd is None or total_rewards_usd <= 0 or elapsed_seconds <= 0:
        return None
    return Decimal(total_rewards_usd) / Decimal(elapsed_seconds)


def breakeven(
    il_usd: Optional[Decimal], total_rewards_usd: Decimal, elapsed_seconds
) -> Breakeven:
    """
    Time for rewards to cover the IL at a price bound.

      rate      = total_rewards / elapsed
      total     = |IL| / rate
      remaining = (|IL| − total_rewards) / rate
      perc      = remaining / total × 100
    """
    rate = rewards_rate(total_rewards_usd, elapsed_seconds)
    if rate is None or il_usd is None:
        return Breakeven("insufficient data", None, None, Decimal(-1), None, None)

    loss = max(-il_usd, _ZERO)
    net = total_rewards_usd - loss
    ratio = total_rewards_usd / loss * _HUNDRED if loss > 0 else None
    if total_rewards_usd >= loss:
        return Breakeven("met", loss / rate, _ZERO, Decimal(-1), ratio, net)

    total = loss / rate
    remaining = (loss - total_rewards_usd) / rate
    return Breakeven("pending", total, remaining, remaining / total * _HUNDRED, ratio, net)


def analyze_impermanent_loss(
    base_amount: Decimal,
    quote_amount: Decimal,
    entry_price: Decimal,
    current_price: Decimal,
    price_lower: Decimal,
    price_upper: Decimal,
    quote_usd: Optional[Decimal],
    total_rewards_usd: Decimal,
    elapsed_seconds: int,
) -> ILAnalysis:
    """
    IL of the opening deposit at the current price and both range bounds,
    with breakeven per bound.

    Raises:
        ValueError: If the liquidity cannot be re-derived from the deposit.
    """
    estimate = estimate_liquidity(base_amount, quote_amount, entry_price, price_lower, price_upper)
    args = (estimate.liquidity, base_amount, quote_amount, price_lower, price_upper, quote_usd)

    current = impermanent_loss_at(current_price, *args)
    upper = impermanent_loss_at(price_upper, *args)
    lower = impermanent_loss_at(price_lower, *args)

    net = None
    if current.il_usd is not None:
        net = current.il_usd + total_rewards_usd

    return ILAnalysis(
        liquidity=estimate,
        current=current,
        upper=upper,
        lower=lower,
        upper_breakeven=breakeven(upper.il_usd, total_rewards_usd, elapsed_seconds),
        lower_breakeven=breakeven(lower.il_usd, total_rewards_usd, elapsed_seconds),
        position_age_seconds=int(elapsed_seconds),
        net_gain_loss_usd=net,
    )


# ── Yield ────────────────────────────────────────────────────────────────


def yield_projection(
    total_rewards_usd: Decimal, elapsed_seconds, opening_usd: Optional[Decimal]
) -> YieldProjection:
    """
    Linear projection of the reward rate since mint.

      daily  = rate × 86 400
      annual = rate × 31 536 000
      APR    = annual / opening value × 100
    """
    rate = rewards_rate(total_rewards_usd, elapsed_seconds)
    if rate is None:
        return YieldProjection(None, _ZERO, _ZERO, None)
    daily = rate * SECONDS_PER_DAY
    annual = rate * SECONDS_PER_YEAR
    apr = annual / opening_usd * _HUNDRED if opening_usd else None
    return YieldProjection(rate, daily, annual, apr)


def format_duration(seconds) -> str:
    """Compact duration: '3d 4h', '5h 12m', '42m'."""
    total = int(seconds)
    if total < 0:
        total = 0
    days, rem = divmod(total, SECONDS_PER_DAY)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    if days:
        return f"{days}d {hours}h"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
