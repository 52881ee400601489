"""
Project Configuration — environment settings, API endpoints, version
=====================================================================

Runtime settings come from environment variables (a local ``.env`` file is
loaded when present). Upstream API configuration:
  DEXScreener: https://docs.dexscreener.com/api/reference
  The Graph gateway: https://thegraph.com/docs/en/querying/querying-the-graph/
"""

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path
from types import MappingProxyType
from typing import Optional

from dotenv import load_dotenv

from lp_tracker.dex_registry import get_subgraph_id
from lp_tracker.rpc_helpers import RPC_URLS

load_dotenv()

# Version: single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("lp-yield-tracker")
except PackageNotFoundError:
    # Dev / CI: package not installed, read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "LP Yield Tracker"


@dataclass(frozen=True)
class DexScreenerAPI:
    """Official DEXScreener API configuration."""

    BASE_URL: str = "https://api.dexscreener.com"
    TOKENS_ENDPOINT: str = "/tokens/v1"  # Up to 30 comma-separated addresses
    MAX_TOKENS_PER_REQUEST: int = 30
    TIMEOUT_SECONDS: int = 15

    # network slug → DEXScreener chain id
    SUPPORTED_CHAINS = MappingProxyType(
        {
            "ethereum": "ethereum",
            "arbitrum": "arbitrum",
            "base": "base",
            "bsc": "bsc",
            "eth": "ethereum",
            "arb": "arbitrum",
            "bnb": "bsc",
        }
    )

    @classmethod
    def get_tokens_url(cls, chain_id: str, addresses: list[str]) -> str:
        """URL to fetch pairs for a batch of token addresses."""
        joined = ",".join(addresses)
        return f"{cls.BASE_URL}{cls.TOKENS_ENDPOINT}/{chain_id}/{joined}"


@dataclass(frozen=True)
class TheGraphAPI:
    """The Graph decentralized-network gateway."""

    GATEWAY_URL: str = "https://gateway.thegraph.com/api"
    TIMEOUT_SECONDS: int = 20

    @classmethod
    def get_subgraph_url(cls, api_key: str, subgraph_id: str) -> str:
        return f"{cls.GATEWAY_URL}/{api_key}/subgraphs/id/{subgraph_id}"


@dataclass
class Settings:
    """Runtime settings, one field per environment variable."""

    RPC_URL: str
    OWNER_ADDRESS: str
    NETWORK: str = "base"
    CHAIN_ID: int = 8453
    DEX: str = "pancakeswap_v3"

    # The Graph
    THEGRAPH_API_KEY: str = ""
    MASTERCHEF_SUBGRAPH_ID: str = ""      # overrides the DEX registry entry

    # SQLite cache
    CACHE_DB_PATH: str = "lp_positions.db"

    # Event scan: provider caps eth_getLogs at 500 blocks
    SCAN_CHUNK_SIZE: int = 499
    SCAN_CONCURRENCY: int = 10
    SCAN_BATCH_DELAY: float = 0.2
    RPC_TIMEOUT: int = 20

    LOG_LEVEL: str = "INFO"
    HOST: str = "127.0.0.1"
    PORT: int = 8000

    @property
    def subgraph_url(self) -> Optional[str]:
        """
        Gateway URL of the farm subgraph for DEX + NETWORK.

        None without an API key, or when neither MASTERCHEF_SUBGRAPH_ID nor the
        registry names a subgraph for this deployment.
        """
        if not self.THEGRAPH_API_KEY:
            return None
        subgraph_id = self.MASTERCHEF_SUBGRAPH_ID or get_subgraph_id(self.DEX, self.NETWORK)
        if not subgraph_id:
            return None
        return TheGraphAPI.get_subgraph_url(self.THEGRAPH_API_KEY, subgraph_id)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    return float(raw) if raw else default


def load_settings() -> Settings:
    """Build Settings from the current environment (uncached)."""
    network = os.getenv("NETWORK", "base").strip().lower() or "base"
    return Settings(
        RPC_URL=os.getenv("RPC_URL", "").strip() or RPC_URLS.get(network, RPC_URLS["base"]),
        OWNER_ADDRESS=os.getenv("OWNER_ADDRESS", "").strip(),
        NETWORK=network,
        CHAIN_ID=_env_int("CHAIN_ID", 8453),
        DEX=os.getenv("DEX", "pancakeswap_v3").strip() or "pancakeswap_v3",
        THEGRAPH_API_KEY=os.getenv("THEGRAPH_API_KEY", "").strip(),
        MASTERCHEF_SUBGRAPH_ID=os.getenv("MASTERCHEF_SUBGRAPH_ID", "").strip(),
        CACHE_DB_PATH=os.getenv("CACHE_DB_PATH", "lp_positions.db"),
        SCAN_CHUNK_SIZE=_env_int("SCAN_CHUNK_SIZE", 499),
        SCAN_CONCURRENCY=_env_int("SCAN_CONCURRENCY", 10),
        SCAN_BATCH_DELAY=_env_float("SCAN_BATCH_DELAY", 0.2),
        RPC_TIMEOUT=_env_int("RPC_TIMEOUT", 20),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").upper(),
        HOST=os.getenv("HOST", "127.0.0.1"),
        PORT=_env_int("PORT", 8000),
    )


@lru_cache()
def get_settings() -> Settings:
    return load_settings()
