#!/usr/bin/env python3
"""
DEX Registry — V3 Contract Address Configuration
=================================================

Maps each supported V3-compatible DEX to its NonfungiblePositionManager,
Factory and (where one exists) liquidity-mining farm per network.

Compatibility Rules:
  ✅ Compatible (same positions() ABI as Uniswap V3):
     - Uniswap V3
     - PancakeSwap V3 (+ MasterChef V3 farm paying CAKE)

Contract Address Sources:
  Uniswap V3  : https://docs.uniswap.org/contracts/v3/reference/deployments/
  PancakeSwap : https://developer.pancakeswap.finance/contracts/v3/addresses
  MasterChef  : https://developer.pancakeswap.finance/contracts/v3/masterchefv3
"""

from typing import Dict, List, Optional

# ── DEX Registry ────────────────────────────────────────────────────────
#
# Structure:
#   DEX_REGISTRY[dex_slug] = {
#       "name": str,                       # Display name
#       "icon": str,                       # Emoji for CLI
#       "reward_symbol": str | None,       # Farm reward token symbol
#       "networks": {
#           "network_slug": {
#               "position_manager": "0x...",
#               "factory": "0x...",
#               "farm": "0x..." | None,          # MasterChef V3
#               "reward_token": "0x..." | None,  # CAKE
#               "subgraph_id": str | None,       # MasterChef V3 subgraph (The Graph)
#           }
#       }
#   }

DEX_REGISTRY: Dict[str, dict] = {
    # ── PancakeSwap V3 ──────────────────────────────────────────────
    # Staked positions are held by MasterChef V3, which streams CAKE.
    # Ref: https://developer.pancakeswap.finance/contracts/v3/addresses
    "pancakeswap_v3": {
        "name": "PancakeSwap V3",
        "icon": "🥞",
        "reward_symbol": "CAKE",
        "networks": {
            "base": {
                "position_manager": "0x46A15B0b27311cedF172AB29E4f4766fbE7F4364",
                "factory": "0x0BFbCF9fa4f9C56B0F40a671Ad40E0805A091865",
                "farm": "0xC6A2Db661D5a5690172d8eB0a7DEA2d3008665A3",
                "reward_token": "0x3055913c90fcc1a6ce9a358911721eeb942013a1",
                "subgraph_id": "3oYoAoCJMV2ZyZSTpg6cUS1gKTzcc2cjmCVfpNyWZVmr",
            },
            "bsc": {
                "position_manager": "0x46A15B0b27311cedF172AB29E4f4766fbE7F4364",
                "factory": "0x0BFbCF9fa4f9C56B0F40a671Ad40E0805A091865",
                "farm": "0x556B9306565093C855AEA9AE92A594704c2Cd59e",
                "reward_token": "0x0E09FaBB73Bd3Ade0a17ECC321fD13a19e81cE82",
                "subgraph_id": None,
            },
            "ethereum": {
                "position_manager": "0x46A15B0b27311cedF172AB29E4f4766fbE7F4364",
                "factory": "0x0BFbCF9fa4f9C56B0F40a671Ad40E0805A091865",
                "farm": None,
                "reward_token": None,
            },
        },
    },
    # ── Uniswap V3 ─────────────────────────────────────────────────
    # No native farm: positions are read, fees only.
    # Ref: https://docs.uniswap.org/contracts/v3/reference/deployments/
    "uniswap_v3": {
        "name": "Uniswap V3",
        "icon": "🦄",
        "reward_symbol": None,
        "networks": {
            "ethereum": {
                "position_manager": "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
                "factory": "0x1F98431c8aD98523631AE4a59f267346ea31F984",
                "farm": None,
                "reward_token": None,
            },
            "arbitrum": {
                "position_manager": "0xC36442b4a4522E871399CD717aBDD847Ab11FE88",
                "factory": "0x1F98431c8aD98523631AE4a59f267346ea31F984",
                "farm": None,
                "reward_token": None,
            },
            "base": {
                "position_manager": "0x03a520b32C04BF3bEEf7BEb72E919cf822Ed34f1",
                "factory": "0x33128a8fC17869897dcE68Ed026d694621f6FDfD",
                "farm": None,
                "reward_token": None,
            },
        },
    },
}


# ── Helper Functions ────────────────────────────────────────────────────


def get_dex_config(dex_slug: str, network: str) -> Optional[dict]:
    """
    Resolve one DEX deployment on one network.

    Returns:
        {slug, name, icon, position_manager, factory, farm, reward_token,
        reward_symbol, subgraph_id} or None when the DEX is not deployed there.
    """
    dex = DEX_REGISTRY.get(dex_slug)
    if not dex or network not in dex.get("networks", {}):
        return None
    addrs = dex["networks"][network]
    return {
        "slug": dex_slug,
        "name": dex["name"],
        "icon": dex["icon"],
        "position_manager": addrs["position_manager"],
        "factory": addrs["factory"],
        "farm": addrs.get("farm"),
        "reward_token": addrs.get("reward_token"),
        "reward_symbol": dex["reward_symbol"] if addrs.get("farm") else None,
        "subgraph_id": addrs.get("subgraph_id") if addrs.get("farm") else None,
    }


def get_dexes_for_network(network: str) -> List[dict]:
    """All registered DEX deployments on a network."""
    dexes = []
    for slug in DEX_REGISTRY:
        cfg = get_dex_config(slug, network)
        if cfg:
            dexes.append(cfg)
    return dexes


def get_subgraph_id(dex_slug: str, network: str) -> Optional[str]:
    """Farm subgraph id of one deployment; None when it has no farm or no known subgraph."""
    cfg = get_dex_config(dex_slug, network)
    return cfg["subgraph_id"] if cfg else None
