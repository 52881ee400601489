"""
Persistence, Report Pipeline and HTTP Tests
===========================================

  - position_cache.py     (SQLite on tmp_path)
  - portfolio_report.py   (PortfolioReporter wired with in-memory fakes)
  - web_app.py            (FastAPI TestClient)
  - commands.cmd_events   (cached history)

Run:  python -m pytest tests/test_cache_report.py -v
"""

import asyncio
import time
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from lp_tracker.central_config import Settings
from lp_tracker.commands import cmd_events
from lp_tracker.rpc_helpers import Q96
from event_scanner import (
    EVENT_DEPOSIT,
    EVENT_FEE_CLAIM,
    EVENT_WITHDRAWAL,
    PositionEvent,
    ScanResult,
    reward_event_type,
)
from portfolio_report import PortfolioReporter, claimed_fees, claimed_rewards
from position_cache import PositionCache, PositionSnapshot
from position_indexer import DataSourceUnavailable, WalletIndex
from position_reader import MintData, MintDataNotFound, OnchainPosition, PoolState, TokenMeta
import valuation_engine as ve
from web_app import create_app

WALLET = "0x" + "ab" * 20
WETH = "0x" + "11" * 20
USDC = "0x" + "22" * 20
CAKE = "0x" + "33" * 20
POOL = "0x" + "44" * 20

LIQUIDITY = 10 ** 18
TICK_LOWER, TICK_UPPER = -6000, 6000


def make_snapshot(token_id=1, opening_usd=Decimal("123.45")):
    return PositionSnapshot(
        token_id=token_id,
        token0=WETH,
        token1=USDC,
        fee=2500,
        tick_lower=TICK_LOWER,
        tick_upper=TICK_UPPER,
        amount0=10 ** 18,
        amount1=3000 * 10 ** 6,
        mint_block=100,
        mint_timestamp=1_700_000_000,
        mint_tx_hash="0xmint",
        quote_side=1,
        entry_price=Decimal("3000.123456789"),
        opening_usd=opening_usd,
    )


def make_event(token_id=1, event_type=EVENT_DEPOSIT, timestamp=100, tx="0xa", index=0, **amounts):
    return PositionEvent(
        token_id=token_id,
        event_type=event_type,
        timestamp=timestamp,
        details="details",
        block=timestamp,
        tx_hash=tx,
        log_index=index,
        **amounts,
    )


# ═══════════════════════════════════════════════════════════════════════════
# position_cache.py
# ═══════════════════════════════════════════════════════════════════════════


class TestPositionCache:
    def test_snapshot_round_trip(self, tmp_path):
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            stored = cache.save_snapshot(make_snapshot())
            loaded = cache.get_snapshot(1)
        assert loaded == stored == make_snapshot()
        assert loaded.opening_usd == Decimal("123.45")
        assert (loaded.tick_lower, loaded.tick_upper) == (TICK_LOWER, TICK_UPPER)

    def test_null_opening_value(self, tmp_path):
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            cache.save_snapshot(make_snapshot(opening_usd=None))
            assert cache.get_snapshot(1).opening_usd is None

    def test_snapshot_written_once(self, tmp_path):
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            cache.save_snapshot(make_snapshot())
            again = cache.save_snapshot(make_snapshot(opening_usd=Decimal(999)))
        assert again.opening_usd == Decimal("123.45")

    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "cache.db")
        with PositionCache(path) as cache:
            cache.save_snapshot(make_snapshot())
        with PositionCache(path) as cache:
            assert cache.get_snapshot(1) is not None

    def test_unknown_token(self, tmp_path):
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            assert cache.get_snapshot(404) is None
            assert cache.get_last_scanned_block(404) is None
            assert cache.advance_checkpoint(404, 10) is False

    def test_checkpoint_never_moves_backwards(self, tmp_path):
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            cache.save_snapshot(make_snapshot())
            assert cache.get_last_scanned_block(1) is None
            assert cache.advance_checkpoint(1, 500) is True
            assert cache.advance_checkpoint(1, 400) is False
            assert cache.advance_checkpoint(1, 500) is False
            assert cache.get_last_scanned_block(1) == 500
            assert cache.advance_checkpoint(1, 600) is True
            assert cache.get_last_scanned_block(1) == 600

    def test_duplicate_events_ignored(self, tmp_path):
        events = [make_event(tx="0xa", index=0), make_event(tx="0xa", index=1)]
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            assert cache.add_events(events) == 2
            assert cache.add_events(events) == 0
            assert len(cache.get_events(1)) == 2

    def test_events_ordered_by_timestamp(self, tmp_path):
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            cache.add_events([
                make_event(timestamp=300, tx="0xc"),
                make_event(timestamp=100, tx="0xa"),
                make_event(timestamp=200, tx="0xb2"),
                make_event(timestamp=200, tx="0xb1"),
            ])
            order = [e.tx_hash for e in cache.get_events(1)]
        assert order == ["0xa", "0xb2", "0xb1", "0xc"]

    def test_event_amounts_round_trip(self, tmp_path):
        event = make_event(
            event_type=EVENT_FEE_CLAIM, amount0=Decimal("0.000123"), amount1=Decimal("45.6"),
        )
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            cache.add_events([event])
            assert cache.get_events(1) == [event]

    def test_events_scoped_per_token(self, tmp_path):
        with PositionCache(str(tmp_path / "cache.db")) as cache:
            cache.add_events([make_event(token_id=1), make_event(token_id=2)])
            assert [e.token_id for e in cache.get_events(2)] == [2]


# ═══════════════════════════════════════════════════════════════════════════
# portfolio_report.py: pure helpers
# ═══════════════════════════════════════════════════════════════════════════


class TestClaimedTotals:
    def test_claimed_fees_net_of_withdrawals(self):
        events = [
            make_event(event_type=EVENT_WITHDRAWAL, amount0=Decimal(1), amount1=Decimal(10)),
            make_event(event_type=EVENT_FEE_CLAIM, amount0=Decimal("1.2"), amount1=Decimal(11)),
        ]
        assert claimed_fees(events) == (Decimal("0.2"), Decimal(1))

    def test_claimed_fees_floored_at_zero(self):
        events = [
            make_event(event_type=EVENT_WITHDRAWAL, amount0=Decimal(2), amount1=Decimal(2)),
            make_event(event_type=EVENT_FEE_CLAIM, amount0=Decimal(1), amount1=Decimal(1)),
        ]
        assert claimed_fees(events) == (0, 0)

    def test_claimed_rewards(self):
        events = [
            make_event(event_type=reward_event_type("CAKE"), reward_amount=Decimal("1.5")),
            make_event(event_type=reward_event_type("CAKE"), reward_amount=Decimal("0.5")),
            make_event(event_type=EVENT_DEPOSIT),
        ]
        assert claimed_rewards(events, "CAKE") == Decimal(2)
        assert claimed_rewards(events, None) == 0


# ═══════════════════════════════════════════════════════════════════════════
# portfolio_report.py: PortfolioReporter with fakes
# ═══════════════════════════════════════════════════════════════════════════

# Both tokens use 18 decimals so that tick 0 is a price of exactly 1
_RAW0, _RAW1 = ve.amounts_for_liquidity(LIQUIDITY, Q96, 0, TICK_LOWER, TICK_UPPER)


class FakeReader:
    dex_name = "PancakeSwap V3"
    farm = "0xfarm"
    reward_token = CAKE
    reward_symbol = "CAKE"

    def __init__(self, failing=(), closed=(), mint_missing=False, head=500):
        self.failing = set(failing)
        self.closed = set(closed)
        self.mint_missing = mint_missing
        self.head = head
        self.mint_lookups = 0
        self.mint_timestamp = int(time.time()) - 86_400

    async def block_number(self):
        return self.head

    async def read_position(self, token_id):
        if token_id in self.failing:
            raise RuntimeError("RPC error: execution reverted")
        return OnchainPosition(
            token_id=token_id, token0=WETH, token1=USDC, fee=2500,
            tick_lower=TICK_LOWER, tick_upper=TICK_UPPER,
            liquidity=0 if token_id in self.closed else LIQUIDITY,
            fee_growth_inside0_last=0, fee_growth_inside1_last=0,
            tokens_owed0=0, tokens_owed1=0,
        )

    async def resolve_pool_address(self, token0, token1, fee):
        return POOL

    async def token_metadata(self, address):
        symbols = {WETH: "WETH", USDC: "USDC", CAKE: "CAKE"}
        return TokenMeta(address, symbols[address], 18)

    async def read_pool_state(self, pool, tick_lower, tick_upper, block=None):
        return PoolState(
            address=pool, sqrt_price_x96=Q96, tick=0, liquidity=LIQUIDITY,
            fee_growth_global0=0, fee_growth_global1=0,
            fee_growth_outside0_lower=0, fee_growth_outside1_lower=0,
            fee_growth_outside0_upper=0, fee_growth_outside1_upper=0,
            block=block,
        )

    async def pending_reward(self, token_id):
        return 10 ** 18

    async def find_mint_data(self, token_id):
        self.mint_lookups += 1
        if self.mint_missing:
            raise MintDataNotFound(f"Mint block not found for token {token_id}")
        return MintData(
            token_id=token_id, block=100, timestamp=self.mint_timestamp, tx_hash="0xmint",
            liquidity=LIQUIDITY, amount0=_RAW0, amount1=_RAW1,
        )


class FakeIndexer:
    def __init__(self, token_ids, staked=None, error=None):
        self.token_ids = token_ids
        self.staked = staked or {}
        self.error = error

    async def index(self, wallet):
        if self.error:
            raise self.error
        return WalletIndex(wallet, list(self.token_ids), dict(self.staked))


class FakeScanner:
    def __init__(self, events=(), end_block=500):
        self.events = list(events)
        self.end_block = end_block
        self.starts = []
        self.rewards = []

    async def scan(self, token_id, start_block, d0, d1, s0, s1, owner=None, rewards=True):
        self.starts.append(start_block)
        self.rewards.append(rewards)
        return ScanResult([e for e in self.events if e.token_id == token_id], self.end_block)


class FakePrices:
    def __init__(self, prices):
        self.prices = prices

    async def get_token_prices(self, addresses, symbols=None):
        return {a.lower(): p for a, p in self.prices.items() if a.lower() in {x.lower() for x in addresses}}


ALL_PRICES = {WETH: Decimal(2), USDC: Decimal(1), CAKE: Decimal(3)}


def make_reporter(tmp_path, reader=None, indexer=None, scanner=None, prices=None):
    return PortfolioReporter(
        reader=reader or FakeReader(),
        indexer=indexer or FakeIndexer([1]),
        scanner=scanner or FakeScanner(),
        cache=PositionCache(str(tmp_path / "cache.db")),
        prices=FakePrices(ALL_PRICES if prices is None else prices),
        settings=Settings(RPC_URL="http://fake", OWNER_ADDRESS=WALLET),
    )


def build(reporter):
    try:
        return asyncio.run(reporter.build_report(WALLET))
    finally:
        reporter.close()


class TestPortfolioReporter:
    def test_full_report(self, tmp_path):
        staked = {1: {"id": "1", "isStaked": True, "pool": {"v3Pool": "0xstakedpool"},
                      "earned": str(5 * 10 ** 17)}}
        collect = make_event(
            event_type=EVENT_FEE_CLAIM, timestamp=200, amount0=Decimal("0.01"), amount1=Decimal("0.01"),
        )
        scanner = FakeScanner([collect])
        report = build(make_reporter(tmp_path, indexer=FakeIndexer([1], staked), scanner=scanner))

        assert report["num_active_positions"] == 1
        assert report["skipped_positions"] == []
        assert report["dex"] == "PancakeSwap V3"
        pos = report["positions"][0]
        assert pos["pair"] == "WETH/USDC"
        assert pos["staked"] is True
        assert pos["pool_address"] == "0xstakedpool"
        assert pos["in_range"] is True
        assert pos["status"] == "IN RANGE"
        assert pos["price_label"] == "USDC per WETH"
        assert pos["current_price"] == pytest.approx(1.0)
        assert pos["fee_tier"] == 0.25
        assert pos["claimed_fees"]["usd"] == pytest.approx(0.03)
        assert pos["unclaimed_fees"]["usd"] == 0
        assert pos["claimed_fees"]["token0"] == "0.01"
        assert pos["rewards"]["pending"] == "1"
        assert pos["rewards"]["subgraph_earned"] == "0.5"
        assert pos["rewards"]["usd"] == pytest.approx(3.0)
        assert pos["total_rewards_usd"] == pytest.approx(3.03)
        assert pos["yield"]["available"] is True
        assert pos["yield"]["daily_projected_usd"] == pytest.approx(3.03, rel=1e-3)
        assert pos["initial_state"]["available"] is True
        assert pos["initial_state"]["tx_hash"] == "0xmint"
        il = pos["impermanent_loss"]
        assert il["available"] is True
        assert il["current"]["il_usd"] == pytest.approx(0, abs=1e-6)
        assert il["liquidity_warning"] is False
        assert pos["events"][0]["event_type"] == EVENT_FEE_CLAIM
        assert report["total_portfolio_value"] == pytest.approx(pos["estimated_value_usd"])
        assert scanner.rewards == [True]

    def test_token_amounts_keep_full_precision(self, tmp_path):
        collect = make_event(
            event_type=EVENT_FEE_CLAIM, timestamp=200,
            amount0=Decimal("1.234567890123456789"), amount1=Decimal("0.000000000000000001"),
        )
        pos = build(make_reporter(tmp_path, scanner=FakeScanner([collect])))["positions"][0]
        assert pos["claimed_fees"]["token0"] == "1.234567890123456789"
        assert pos["claimed_fees"]["token1"] == "0.000000000000000001"
        assert Decimal(pos["current_balances"]["token0"]) == ve.to_human(_RAW0, 18)
        assert Decimal(pos["initial_state"]["balances"]["token1"]) == ve.to_human(_RAW1, 18)

    def test_snapshot_and_checkpoint_persisted(self, tmp_path):
        reader = FakeReader()
        scanner = FakeScanner(end_block=500)
        build(make_reporter(tmp_path, reader=reader, scanner=scanner))

        with PositionCache(str(tmp_path / "cache.db")) as cache:
            snapshot = cache.get_snapshot(1)
            assert snapshot.mint_block == 100
            assert snapshot.entry_price == 1
            assert snapshot.opening_usd is not None
            assert cache.get_last_scanned_block(1) == 500

        reader2 = FakeReader()
        scanner2 = FakeScanner(end_block=600)
        build(make_reporter(tmp_path, reader=reader2, scanner=scanner2))
        assert scanner.starts == [100]
        assert scanner2.starts == [501]
        assert reader2.mint_lookups == 0

    def test_failing_position_skipped(self, tmp_path):
        report = build(make_reporter(
            tmp_path, reader=FakeReader(failing={2}), indexer=FakeIndexer([1, 2]),
        ))
        assert report["num_active_positions"] == 1
        assert report["skipped_positions"] == [2]

    def test_missing_quote_price(self, tmp_path):
        report = build(make_reporter(tmp_path, prices={WETH: Decimal(2), CAKE: Decimal(3)}))
        pos = report["positions"][0]
        assert pos["impermanent_loss"] == {"available": False, "reason": "no USD price for USDC"}
        assert pos["yield"]["available"] is False
        assert pos["estimated_value_usd"] is None
        assert pos["token1"]["price_usd"] is None

    def test_mint_not_found(self, tmp_path):
        scanner = FakeScanner()
        report = build(make_reporter(tmp_path, reader=FakeReader(mint_missing=True), scanner=scanner))
        pos = report["positions"][0]
        assert pos["initial_state"]["available"] is False
        assert pos["impermanent_loss"]["reason"] == "mint data not found"
        assert pos["events"] == []
        assert scanner.starts == []

    def test_unstaked_position_has_no_pending_reward(self, tmp_path):
        scanner = FakeScanner()
        pos = build(make_reporter(tmp_path, scanner=scanner))["positions"][0]
        assert pos["staked"] is False
        assert pos["pool_address"] == POOL
        assert pos["rewards"]["pending"] == "0"
        assert scanner.rewards == [False]

    def test_farm_record_no_longer_staked(self, tmp_path):
        staked = {1: {"id": "1", "isStaked": False, "pool": {"v3Pool": "0xstakedpool"}, "earned": "0"}}
        scanner = FakeScanner()
        pos = build(make_reporter(
            tmp_path, indexer=FakeIndexer([1], staked), scanner=scanner,
        ))["positions"][0]
        assert pos["staked"] is False
        assert pos["rewards"]["pending"] == "0"
        assert scanner.rewards == [False]

    def test_closed_positions_only(self, tmp_path):
        report = build(make_reporter(tmp_path, reader=FakeReader(closed={1})))
        assert report == {"message": f"No active positions found for wallet {WALLET}"}

    def test_empty_wallet(self, tmp_path):
        report = build(make_reporter(tmp_path, indexer=FakeIndexer([])))
        assert "message" in report

    def test_enumeration_failure_propagates(self, tmp_path):
        indexer = FakeIndexer([], error=DataSourceUnavailable("Cannot enumerate positions"))
        with pytest.raises(DataSourceUnavailable):
            build(make_reporter(tmp_path, indexer=indexer))

    @pytest.mark.parametrize("network, wired", [("base", True), ("bsc", False)])
    def test_subgraph_wired_per_network(self, tmp_path, network, wired):
        settings = Settings(
            RPC_URL="http://fake", OWNER_ADDRESS=WALLET, NETWORK=network,
            THEGRAPH_API_KEY="key", CACHE_DB_PATH=str(tmp_path / "cache.db"),
        )
        reporter = PortfolioReporter.from_settings(settings)
        try:
            assert (reporter.indexer.subgraph is not None) is wired
        finally:
            reporter.close()


# ═══════════════════════════════════════════════════════════════════════════
# web_app.py
# ═══════════════════════════════════════════════════════════════════════════


class StubReporter:
    def __init__(self, report=None, error=None):
        self.report = report
        self.error = error
        self.wallets = []
        self.closed = False

    async def build_report(self, wallet):
        self.wallets.append(wallet)
        if self.error:
            raise self.error
        return self.report

    def close(self):
        self.closed = True


def client_for(stub, owner=WALLET):
    settings = Settings(RPC_URL="http://fake", OWNER_ADDRESS=owner)
    return TestClient(create_app(reporter_factory=lambda: stub, settings=settings))


class TestWebApp:
    def test_api_data(self):
        stub = StubReporter({"message": "No active positions found for wallet x"})
        response = client_for(stub).get("/api/data", params={"wallet_address": "0x" + "cd" * 20})
        assert response.status_code == 200
        assert response.json() == {"message": "No active positions found for wallet x"}
        assert stub.wallets == ["0x" + "cd" * 20]
        assert stub.closed is True

    def test_defaults_to_owner_address(self):
        stub = StubReporter({"message": "ok"})
        client_for(stub).get("/api/data")
        assert stub.wallets == [WALLET]

    def test_invalid_wallet(self):
        stub = StubReporter({})
        response = client_for(stub).get("/api/data", params={"wallet_address": "0x123"})
        assert response.status_code == 400
        assert "Invalid wallet address" in response.json()["error"]
        assert stub.wallets == []

    def test_missing_wallet_and_owner(self):
        response = client_for(StubReporter({}), owner="").get("/api/data")
        assert response.status_code == 400

    def test_data_source_unavailable(self):
        stub = StubReporter(error=DataSourceUnavailable("Cannot enumerate positions"))
        response = client_for(stub).get("/api/data")
        assert response.status_code == 502
        assert response.json() == {"error": "Cannot enumerate positions"}
        assert stub.closed is True

    def test_dashboard_html(self):
        stub = StubReporter({"message": "No active positions found for wallet x"})
        response = client_for(stub).get("/")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/html")
        assert "No active positions found" in response.text

    def test_dashboard_errors(self):
        assert client_for(StubReporter({})).get("/", params={"wallet_address": "bad"}).status_code == 400
        stub = StubReporter(error=DataSourceUnavailable("down"))
        response = client_for(stub).get("/")
        assert response.status_code == 502
        assert "down" in response.text


# ═══════════════════════════════════════════════════════════════════════════
# commands.cmd_events
# ═══════════════════════════════════════════════════════════════════════════


class TestCmdEvents:
    def test_prints_history(self, tmp_path, capsys):
        path = str(tmp_path / "cache.db")
        with PositionCache(path) as cache:
            cache.save_snapshot(make_snapshot())
            cache.add_events([make_event(timestamp=1_700_000_100)])
        ok = cmd_events(1, Settings(RPC_URL="http://fake", OWNER_ADDRESS="", CACHE_DB_PATH=path))
        output = capsys.readouterr().out
        assert ok is True
        assert "Position #1" in output
        assert EVENT_DEPOSIT in output
        assert "1 event(s)" in output

    def test_unknown_position(self, tmp_path, capsys):
        path = str(tmp_path / "cache.db")
        ok = cmd_events(9, Settings(RPC_URL="http://fake", OWNER_ADDRESS="", CACHE_DB_PATH=path))
        assert ok is False
        assert "not in the cache" in capsys.readouterr().out
