#!/usr/bin/env python3
"""
LP Yield Tracker -- PancakeSwap V3 position valuation
======================================================

Values concentrated-liquidity positions (held or staked in MasterChef V3),
tracks their event history and estimates impermanent loss vs. rewards.

Usage:
  python run.py serve [--host H] [--port P]          HTTP API + dashboard (uvicorn)
  python run.py report [wallet] [--json] [--no-browser]
  python run.py list   [wallet]                      Active token ids (held + staked)
  python run.py events <tokenId>                     Cached event history
  python run.py info                                 Configuration overview

The wallet defaults to OWNER_ADDRESS from the environment / .env.

Sources:
  Uniswap V3 Whitepaper : https://uniswap.org/whitepaper-v3.pdf
  PancakeSwap V3 Docs   : https://developer.pancakeswap.finance/contracts/v3/addresses
  DEXScreener API       : https://docs.dexscreener.com/api/reference
"""

import sys
import asyncio
import argparse
import logging
from pathlib import Path

# ── Imports ───────────────────────────────────────────────────────────────

project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from lp_tracker.central_config import PROJECT_VERSION, get_settings  # noqa: E402
from lp_tracker.commands import (  # noqa: E402
    cmd_events,
    cmd_info,
    cmd_list,
    cmd_report,
    cmd_serve,
)
from position_indexer import DataSourceUnavailable  # noqa: E402


# ── CLI Parser ────────────────────────────────────────────────────────────


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lp-tracker",
        description=f"LP Yield Tracker v{PROJECT_VERSION} — V3 position valuation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py serve                              Dashboard at http://127.0.0.1:8000/
  python run.py report 0xWALLET                    HTML report (opens browser)
  python run.py report 0xWALLET --json             JSON report to stdout
  python run.py list   0xWALLET                    Active positions
  python run.py events 123456                      Cached history of a position
  python run.py info                               Configuration overview

Configuration (.env):
  RPC_URL, OWNER_ADDRESS, NETWORK, DEX, THEGRAPH_API_KEY, CACHE_DB_PATH,
  SCAN_CHUNK_SIZE, SCAN_CONCURRENCY, SCAN_BATCH_DELAY, LOG_LEVEL
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"LP Yield Tracker v{PROJECT_VERSION}"
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    serve_p = sub.add_parser("serve", help="Run the HTTP API and dashboard")
    serve_p.add_argument("--host", type=str, default=None, help="Bind address (default: HOST)")
    serve_p.add_argument("--port", type=int, default=None, help="Port (default: PORT)")

    report_p = sub.add_parser("report", help="Build the wallet report")
    report_p.add_argument("wallet", nargs="?", default=None, help="Wallet address (default: OWNER_ADDRESS)")
    report_p.add_argument("--json", action="store_true", help="Print JSON instead of writing HTML")
    report_p.add_argument("--no-browser", action="store_true", help="Do not open the HTML report")

    list_p = sub.add_parser("list", help="List active positions of a wallet")
    list_p.add_argument("wallet", nargs="?", default=None, help="Wallet address (default: OWNER_ADDRESS)")

    events_p = sub.add_parser("events", help="Show the cached event history of a position")
    events_p.add_argument("token_id", type=int, help="Position NFT tokenId")

    sub.add_parser("info", help="Configuration & architecture info")

    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# ── Main ──────────────────────────────────────────────────────────────────


def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)

    if args.command == "info":
        cmd_info(settings)
        return 0
    if args.command == "serve":
        cmd_serve(args.host, args.port, settings)
        return 0
    if args.command == "events":
        return 0 if cmd_events(args.token_id, settings) else 1

    try:
        if args.command == "list":
            ok = asyncio.run(cmd_list(args.wallet, settings))
        elif args.command == "report":
            ok = asyncio.run(
                cmd_report(
                    args.wallet,
                    as_json=args.json,
                    open_browser=not args.no_browser,
                    settings=settings,
                )
            )
        else:
            parser.print_help()
            return 0
    except DataSourceUnavailable as exc:
        print(f"\n❌ {exc}")
        return 1
    return 0 if ok else 1


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        sys.exit(130)
