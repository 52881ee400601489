"""
LP Yield Tracker — Command Implementations
==========================================

All CLI command handlers live here, keeping run.py as a thin
argparse dispatcher.  Each public function corresponds to a
subcommand (serve, report, list, events, info).
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone

from lp_tracker.central_config import PROJECT_NAME, PROJECT_VERSION, Settings, get_settings

_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")


def _resolve_wallet(wallet: str | None, settings: Settings) -> str | None:
    """CLI argument, else OWNER_ADDRESS; None (with a message) when invalid."""
    wallet = (wallet or settings.OWNER_ADDRESS or "").strip()
    if not _ADDRESS_RE.fullmatch(wallet):
        print("❌ Invalid wallet address. Must be 42 hex characters starting with 0x.")
        print("   Pass it as an argument or set OWNER_ADDRESS in .env")
        return None
    return wallet


def _fmt_usd(value) -> str:
    return "N/A" if value is None else f"${value:,.2f}"


# ── Commands ─────────────────────────────────────────────────────────────


def cmd_info(settings: Settings | None = None) -> None:
    """Display configuration and architecture information."""
    from lp_tracker.dex_registry import get_dex_config, get_dexes_for_network

    settings = settings or get_settings()
    dex = get_dex_config(settings.DEX, settings.NETWORK)

    print(f"\n📊 {PROJECT_NAME} v{PROJECT_VERSION}")
    print("=" * 55)
    print(f"🌐 Network    : {settings.NETWORK} (chain id {settings.CHAIN_ID})")
    if dex:
        print(f"{dex['icon']} DEX        : {dex['name']}")
        print(f"   Positions  : {dex['position_manager']}")
        print(f"   Farm       : {dex['farm'] or '—'}")
    else:
        print(f"❌ DEX        : {settings.DEX} is not deployed on {settings.NETWORK}")
    print(f"📡 RPC        : {settings.RPC_URL}")
    print(f"🕸️  Subgraph   : {'configured' if settings.subgraph_url else 'not configured (no THEGRAPH_API_KEY or no subgraph for this network)'}")
    print(f"💾 Cache      : {settings.CACHE_DB_PATH}")
    print(
        f"🔎 Event scan : {settings.SCAN_CHUNK_SIZE} blocks/chunk, "
        f"{settings.SCAN_CONCURRENCY} concurrent, {settings.SCAN_BATCH_DELAY}s pause"
    )
    print()
    print("📁 Files:")
    print("   run.py                — CLI entry point")
    print("   web_app.py            — FastAPI app (GET /api/data, GET /)")
    print("   portfolio_report.py   — wallet report pipeline")
    print("   position_indexer.py   — wallet → active token ids (held + staked)")
    print("   position_reader.py    — on-chain position / pool / mint reader")
    print("   event_scanner.py      — chunked event log scanner")
    print("   position_cache.py     — SQLite snapshots, events, checkpoints")
    print("   valuation_engine.py   — V3 math, IL, breakeven, yield")
    print("   html_generator.py     — HTML dashboard")
    print("   lp_tracker/           — RPC helpers, config, DEX registry, API clients")
    print()
    print(f"🔄 DEXes on {settings.NETWORK}:")
    for cfg in get_dexes_for_network(settings.NETWORK):
        rewards = f"farm pays {cfg['reward_symbol']}" if cfg["farm"] else "fees only"
        selected = "  ← selected" if cfg["slug"] == settings.DEX else ""
        print(f"   {cfg['icon']} {cfg['name']:<16} {rewards}{selected}")
    print()
    print("🔗 Quick Start:")
    print("   python run.py list   0xWALLET")
    print("   python run.py report 0xWALLET")
    print("   python run.py serve  → http://127.0.0.1:8000/?wallet_address=0xWALLET")


def cmd_serve(host: str | None = None, port: int | None = None, settings: Settings | None = None) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    settings = settings or get_settings()
    host = host or settings.HOST
    port = port or settings.PORT
    print(f"\n🚀 {PROJECT_NAME} v{PROJECT_VERSION} on http://{host}:{port}")
    uvicorn.run("web_app:app", host=host, port=port, log_level=settings.LOG_LEVEL.lower())


async def cmd_list(wallet: str | None = None, settings: Settings | None = None) -> bool:
    """List active (held + staked) positions of a wallet."""
    from portfolio_report import PortfolioReporter

    settings = settings or get_settings()
    wallet = _resolve_wallet(wallet, settings)
    if not wallet:
        return False

    reporter = PortfolioReporter.from_settings(settings)
    try:
        print(f"\n🔄 Scanning {reporter.reader.dex_name} positions on {settings.NETWORK.title()}...")
        index = await reporter.indexer.index(wallet)
        print(f"\n{'=' * 65}")
        print(f"  {reporter.reader.dex_name} — {settings.NETWORK.title()}")
        print(f"  👛 Wallet: {wallet}")
        print(f"{'=' * 65}")
        if not index.token_ids:
            print("  No active positions found.")
            return True
        for i, token_id in enumerate(index.token_ids, 1):
            try:
                pos = await reporter.reader.read_position(token_id)
                meta0 = await reporter.reader.token_metadata(pos.token0)
                meta1 = await reporter.reader.token_metadata(pos.token1)
            except RuntimeError as exc:
                print(f"\n    {i}. Position #{token_id} — ⚠️  unreadable: {exc}")
                continue
            where = "🌾 Staked" if token_id in index.staked else "👛 Wallet"
            print(f"\n    {i}. Position #{token_id}")
            print(f"       Pair     : {meta0.symbol}/{meta1.symbol} ({pos.fee / 10_000:.2f}%)")
            print(f"       Ticks    : [{pos.tick_lower}, {pos.tick_upper})")
            print(f"       Held in  : {where}")
            print(f"       Liquidity: {pos.liquidity:,}")
        print(f"\n{'=' * 65}")
        print(f"  Total: {len(index.token_ids)} active ({len(index.staked)} staked)")
        print(f"{'=' * 65}")
        print("\n  💡 Full report: python run.py report " + wallet)
    finally:
        reporter.close()
    return True


async def cmd_report(
    wallet: str | None = None,
    as_json: bool = False,
    open_browser: bool = True,
    settings: Settings | None = None,
) -> bool:
    """Build the wallet report; print it as JSON or write the HTML dashboard."""
    from html_generator import generate_report_file
    from portfolio_report import PortfolioReporter

    settings = settings or get_settings()
    wallet = _resolve_wallet(wallet, settings)
    if not wallet:
        return False

    reporter = PortfolioReporter.from_settings(settings)
    try:
        if not as_json:
            print(f"\n🔄 Building report for {wallet}...")
        report = await reporter.build_report(wallet)
    finally:
        reporter.close()

    if as_json:
        print(json.dumps(report, indent=2))
        return True

    if "message" in report:
        print(f"\n  {report['message']}")
        return True

    print(f"\n{'=' * 65}")
    print(f"  💰 Portfolio value : {_fmt_usd(report['total_portfolio_value'])}")
    print(f"  📈 Daily projected : {_fmt_usd(report['total_daily_projected_usd_earnings'])}")
    print(f"  📈 Annual projected: {_fmt_usd(report['total_annual_projected_usd_earnings'])}")
    for pos in report["positions"]:
        flag = "🟢" if pos["in_range"] else "🔴"
        print(f"  {flag} #{pos['token_id']} {pos['pair']:<14} {_fmt_usd(pos['estimated_value_usd'])}")
    if report["skipped_positions"]:
        print(f"  ⚠️  Skipped: {', '.join(str(t) for t in report['skipped_positions'])}")
    print(f"{'=' * 65}")

    path = generate_report_file(report, open_browser=open_browser)
    print(f"\n📄 Report: {path}")
    print("   (temporary file, owner-only permissions)")
    return True


def cmd_events(token_id: int, settings: Settings | None = None) -> bool:
    """Print the cached event history of a position (no network access)."""
    from position_cache import PositionCache

    settings = settings or get_settings()
    with PositionCache(settings.CACHE_DB_PATH) as cache:
        snapshot = cache.get_snapshot(token_id)
        events = cache.get_events(token_id)

    if snapshot is None:
        print(f"\n❌ Position #{token_id} is not in the cache ({settings.CACHE_DB_PATH}).")
        print("   Run a report for its wallet first.")
        return False

    minted = datetime.fromtimestamp(snapshot.mint_timestamp, timezone.utc)
    print(f"\n📜 Position #{token_id} — minted {minted:%Y-%m-%d %H:%M} UTC (block {snapshot.mint_block})")
    print(f"   Scanned up to block {snapshot.last_scanned_block or '—'}")
    print("=" * 65)
    if not events:
        print("  No events recorded.")
        return True
    for ev in events:
        when = datetime.fromtimestamp(ev.timestamp, timezone.utc)
        print(f"  {when:%Y-%m-%d %H:%M}  {ev.event_type:<22} {ev.details}")
    print("=" * 65)
    print(f"  {len(events)} event(s)")
    return True
