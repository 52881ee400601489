"""
Test Suite — Valuation Formula Validation
=========================================

Tests the formulas in valuation_engine.py against hand-computed inputs.

Reference position used throughout (quote per base):
  L = 1000, Pa = 1, Pb = 4, entry Pc = 2.25 (√Pc = 1.5)
  base  x = L × (1/√Pc − 1/√Pb) = 1000 × (2/3 − 1/2) = 166.67
  quote y = L × (√Pc − √Pa)     = 1000 × (1.5 − 1)   = 500

Formula Sources:
  - Uniswap V3 Whitepaper §6.1–§6.4
  - Uniswap V3 Development Book — Calculating Liquidity

Run:  python -m pytest tests/test_math.py -v
"""

from decimal import Decimal
from types import SimpleNamespace

import pytest

import valuation_engine as ve
from lp_tracker.rpc_helpers import Q96, Q128, Q256


L = Decimal(1000)
PA = Decimal(1)
PB = Decimal(4)
PC = Decimal("2.25")
BASE = L * (Decimal(1) / Decimal("1.5") - Decimal("0.5"))
QUOTE = L * (Decimal("1.5") - Decimal(1))


# ── Fee Growth (Pool.sol::_getFeeGrowthInside) ──────────────────────────

class TestFeeGrowthInside:
    def test_in_range(self):
        assert ve.fee_growth_inside(0, -100, 100, 100, 10, 20) == 70

    def test_below_range_wraps(self):
        # inside = outside_lower − outside_upper when price is below the range
        assert ve.fee_growth_inside(-200, -100, 100, 100, 10, 20) == (10 - 20) % Q256

    def test_above_range(self):
        # inside = outside_upper − outside_lower when price is above the range
        assert ve.fee_growth_inside(200, -100, 100, 100, 10, 30) == 20

    def test_result_is_uint256(self):
        value = ve.fee_growth_inside(0, -100, 100, 0, 5, 5)
        assert 0 <= value < Q256


class TestUncollectedFees:
    def test_positive_delta(self):
        liquidity = 10 ** 18
        assert ve.uncollected_fees(liquidity, 5 * Q128, 4 * Q128, 7) == liquidity + 7

    def test_zero_delta_returns_owed(self):
        assert ve.uncollected_fees(10 ** 18, 123, 123, 42) == 42

    def test_negative_delta_returns_owed_exactly(self):
        assert ve.uncollected_fees(10 ** 18, 100, 200, 42) == 42

    def test_wraparound_is_small_positive(self):
        # last near 2^256, now just past zero: a delta of 10
        assert ve.uncollected_fees(Q128, 5, Q256 - 5, 0) == 10

    def test_position_fees_both_sides(self):
        position = SimpleNamespace(
            tick_lower=-100, tick_upper=100, liquidity=Q128,
            fee_growth_inside0_last=0, fee_growth_inside1_last=0,
            tokens_owed0=1, tokens_owed1=2,
        )
        pool = SimpleNamespace(
            tick=0,
            fee_growth_global0=30, fee_growth_outside0_lower=10, fee_growth_outside0_upper=10,
            fee_growth_global1=50, fee_growth_outside1_lower=0, fee_growth_outside1_upper=0,
        )
        assert ve.position_fees(position, pool) == (11, 52)


# ── Liquidity ↔ Amounts (Whitepaper §6.2) ───────────────────────────────

class TestAmountsForLiquidity:
    def test_zero_liquidity(self):
        assert ve.amounts_for_liquidity(0, Q96, 0, -100, 100) == (0, 0)

    def test_symmetric_range_at_price_one(self):
        a0, a1 = ve.amounts_for_liquidity(10 ** 18, Q96, 0, -100, 100)
        assert a0 > 0 and a1 > 0
        assert abs(a0 - a1) <= 1

    def test_below_range_all_token0(self):
        a0, a1 = ve.amounts_for_liquidity(10 ** 18, Q96, -200, -100, 100)
        assert a0 > 0
        assert a1 == 0

    def test_above_range_all_token1(self):
        a0, a1 = ve.amounts_for_liquidity(10 ** 18, Q96, 200, -100, 100)
        assert a0 == 0
        assert a1 > 0

    def test_results_are_ints(self):
        a0, a1 = ve.amounts_for_liquidity(123456789, Q96, 0, -60, 60)
        assert isinstance(a0, int) and isinstance(a1, int)


class TestPriceHelpers:
    def test_to_human(self):
        assert ve.to_human(1_500_000, 6) == Decimal("1.5")

    def test_tick_zero_decimal_adjusted(self):
        assert ve.tick_to_price(0, 18, 6) == Decimal(10) ** 12

    def test_sqrt_price_at_q96(self):
        assert ve.sqrt_price_x96_to_price(Q96, 18, 18) == Decimal(1)

    def test_sqrt_price_zero(self):
        assert ve.sqrt_price_x96_to_price(0, 18, 6) == 0

    def test_tick_and_sqrt_price_agree(self):
        sqrt_price = int(ve.sqrt_ratio_at_tick(600) * Q96)
        from_tick = ve.tick_to_price(600, 18, 18)
        from_sqrt = ve.sqrt_price_x96_to_price(sqrt_price, 18, 18)
        assert abs(from_tick - from_sqrt) / from_tick < Decimal("1e-20")

    def test_orient_quote1_passthrough(self):
        assert ve.orient_price(Decimal(4), 1) == Decimal(4)

    def test_orient_quote0_inverts(self):
        assert ve.orient_price(Decimal(4), 0) == Decimal("0.25")

    def test_orient_zero_price(self):
        assert ve.orient_price(Decimal(0), 0) == 0


# ── Liquidity Re-derivation ─────────────────────────────────────────────

class TestEstimateLiquidity:
    def test_straddling_estimates_agree(self):
        est = ve.estimate_liquidity(BASE, QUOTE, PC, PA, PB)
        assert abs(est.liquidity - L) < Decimal("1e-30")
        assert est.divergence < ve.LIQUIDITY_DIVERGENCE_LIMIT
        assert est.warning is False

    def test_out_of_range_single_estimate(self):
        # Entry below range: all base, Pc clamps to Pa, x = 1000 × (1 − 1/2)
        est = ve.estimate_liquidity(Decimal(500), Decimal(0), Decimal("0.5"), PA, PB)
        assert est.liquidity == L
        assert est.base_estimate == L
        assert est.quote_estimate is None

    def test_divergent_estimates_flagged(self):
        est = ve.estimate_liquidity(BASE * 2, QUOTE, PC, PA, PB)
        assert est.warning is True
        assert est.divergence > ve.LIQUIDITY_DIVERGENCE_LIMIT

    def test_degenerate_raises(self):
        with pytest.raises(ValueError):
            ve.estimate_liquidity(Decimal(0), Decimal(0), PC, PA, PB)

    def test_invalid_range_raises(self):
        with pytest.raises(ValueError):
            ve.estimate_liquidity(BASE, QUOTE, PC, PB, PA)


# ── Impermanent Loss ────────────────────────────────────────────────────

class TestImpermanentLoss:
    def test_zero_at_entry_price(self):
        point = ve.impermanent_loss_at(PC, L, BASE, QUOTE, PA, PB)
        assert abs(point.il) < Decimal("1e-30")

    def test_loss_at_lower_bound(self):
        # LP = 500 quote, hold = 166.67 + 500
        point = ve.impermanent_loss_at(PA, L, BASE, QUOTE, PA, PB)
        assert point.lp_value == Decimal(500)
        assert point.il < 0
        assert abs(point.il + BASE) < Decimal("1e-30")

    def test_loss_at_upper_bound(self):
        point = ve.impermanent_loss_at(PB, L, BASE, QUOTE, PA, PB)
        assert point.il < 0

    def test_usd_scaling(self):
        point = ve.impermanent_loss_at(PA, L, BASE, QUOTE, PA, PB, quote_usd=Decimal(2))
        assert point.il_usd == point.il * 2

    def test_usd_none_without_price(self):
        point = ve.impermanent_loss_at(PA, L, BASE, QUOTE, PA, PB)
        assert point.il_usd is None

    def test_lp_value_above_range_is_all_quote(self):
        assert ve.lp_value(L, Decimal(9), PA, PB) == L * (PB.sqrt() - PA.sqrt())


class TestBreakeven:
    def test_insufficient_without_rewards(self):
        be = ve.breakeven(Decimal(-100), Decimal(0), 1000)
        assert be.status == "insufficient data"
        assert be.remaining_perc == -1

    def test_insufficient_without_elapsed(self):
        be = ve.breakeven(Decimal(-100), Decimal(50), 0)
        assert be.status == "insufficient data"

    def test_insufficient_without_il(self):
        assert ve.breakeven(None, Decimal(50), 1000).status == "insufficient data"

    def test_pending(self):
        # rate 0.05/s → total 2000 s, remaining 1000 s
        be = ve.breakeven(Decimal(-100), Decimal(50), 1000)
        assert be.status == "pending"
        assert be.total_seconds == 2000
        assert be.remaining_seconds == 1000
        assert be.remaining_perc == 50
        assert be.rewards_vs_il_perc == 50
        assert be.net_usd == -50

    def test_met(self):
        be = ve.breakeven(Decimal(-100), Decimal(150), 1000)
        assert be.status == "met"
        assert be.remaining_perc == -1
        assert be.net_usd == 50

    def test_no_loss_is_met(self):
        be = ve.breakeven(Decimal(10), Decimal(1), 100)
        assert be.status == "met"
        assert be.rewards_vs_il_perc is None


class TestAnalyzeImpermanentLoss:
    def test_full_analysis(self):
        analysis = ve.analyze_impermanent_loss(
            BASE, QUOTE, PC, PC, PA, PB, Decimal(1), Decimal(10), 86_400,
        )
        assert abs(analysis.current.il) < Decimal("1e-30")
        assert analysis.upper.price == PB
        assert analysis.lower.price == PA
        assert analysis.lower_breakeven.status == "pending"
        assert analysis.position_age_seconds == 86_400
        assert abs(analysis.net_gain_loss_usd - 10) < Decimal("1e-30")

    def test_no_quote_price(self):
        analysis = ve.analyze_impermanent_loss(
            BASE, QUOTE, PC, PC, PA, PB, None, Decimal(10), 86_400,
        )
        assert analysis.net_gain_loss_usd is None
        assert analysis.upper_breakeven.status == "insufficient data"


# ── Yield ───────────────────────────────────────────────────────────────

class TestYieldProjection:
    def test_linear_projection(self):
        proj = ve.yield_projection(Decimal(864), 86_400, Decimal(1000))
        assert proj.rewards_per_second == Decimal("0.01")
        assert proj.daily_usd == 864
        assert proj.annual_usd == 864 * 365
        assert proj.apr_perc == Decimal(864 * 365) / 1000 * 100

    def test_zero_elapsed(self):
        proj = ve.yield_projection(Decimal(10), 0, Decimal(1000))
        assert proj.rewards_per_second is None
        assert proj.daily_usd == 0
        assert proj.apr_perc is None

    def test_no_opening_value(self):
        proj = ve.yield_projection(Decimal(10), 100, None)
        assert proj.daily_usd > 0
        assert proj.apr_perc is None


class TestFormatDuration:
    @pytest.mark.parametrize("seconds, expected", [
        (3 * 86_400 + 4 * 3600, "3d 4h"),
        (5 * 3600 + 12 * 60, "5h 12m"),
        (42 * 60, "42m"),
        (0, "0m"),
        (-5, "0m"),
        (Decimal("3725.9"), "1h 2m"),
    ])
    def test_formats(self, seconds, expected):
        assert ve.format_duration(seconds) == expected
