#!/usr/bin/env python3
"""
LP Yield Tracker — HTTP API
============================

  GET /api/data?wallet_address=0x...   JSON report (default: OWNER_ADDRESS)
  GET /?wallet_address=0x...           same report rendered as HTML

Errors are JSON ``{"error": ...}``: 400 for a malformed address, 502 when
the RPC endpoint cannot enumerate the wallet. An empty wallet returns
``{"message": ...}`` with 200.

Run:  uvicorn web_app:app   (or: python run.py serve)
"""

import logging
import re
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, FastAPI
from fastapi.responses import HTMLResponse, JSONResponse

from lp_tracker.central_config import PROJECT_NAME, PROJECT_VERSION, Settings, get_settings
from html_generator import build_dashboard_html, build_error_html
from portfolio_report import PortfolioReporter
from position_indexer import DataSourceUnavailable

logger = logging.getLogger(__name__)

ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")

ReporterFactory = Callable[[], PortfolioReporter]


class InvalidWallet(ValueError):
    pass


def _resolve_wallet(wallet_address: Optional[str], settings: Settings) -> str:
    wallet = (wallet_address or settings.OWNER_ADDRESS or "").strip()
    if not ADDRESS_RE.fullmatch(wallet):
        raise InvalidWallet(
            f"Invalid wallet address: {wallet or '(empty)'}. Must be 0x followed by 40 hex characters."
        )
    return wallet


def create_app(
    reporter_factory: Optional[ReporterFactory] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Application factory.

    ``reporter_factory`` builds one PortfolioReporter per request (default:
    ``PortfolioReporter.from_settings``); it is closed after the request.
    """

    def _settings() -> Settings:
        return settings or get_settings()

    def _factory() -> PortfolioReporter:
        if reporter_factory is not None:
            return reporter_factory()
        return PortfolioReporter.from_settings(_settings())

    async def _report(wallet: str) -> Dict[str, Any]:
        reporter = _factory()
        try:
            return await reporter.build_report(wallet)
        finally:
            reporter.close()

    router = APIRouter()

    @router.get("/api/data")
    async def get_data(wallet_address: Optional[str] = None):
        try:
            wallet = _resolve_wallet(wallet_address, _settings())
        except InvalidWallet as exc:
            return JSONResponse(status_code=400, content={"error": str(exc)})
        try:
            return await _report(wallet)
        except DataSourceUnavailable as exc:
            logger.error("Report for %s failed: %s", wallet, exc)
            return JSONResponse(status_code=502, content={"error": str(exc)})

    @router.get("/", response_class=HTMLResponse)
    async def dashboard(wallet_address: Optional[str] = None):
        try:
            wallet = _resolve_wallet(wallet_address, _settings())
        except InvalidWallet as exc:
            return HTMLResponse(build_error_html(str(exc)), status_code=400)
        try:
            report = await _report(wallet)
        except DataSourceUnavailable as exc:
            logger.error("Report for %s failed: %s", wallet, exc)
            return HTMLResponse(build_error_html(str(exc)), status_code=502)
        return HTMLResponse(build_dashboard_html(report))

    app = FastAPI(title=PROJECT_NAME, version=PROJECT_VERSION)
    app.include_router(router)
    return app


app = create_app()
