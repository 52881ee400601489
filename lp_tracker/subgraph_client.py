#!/usr/bin/env python3
"""
MasterChef Subgraph Client — staked positions via The Graph
============================================================

A position staked in MasterChef V3 is owned (ERC-721) by the farm contract,
so ``balanceOf(wallet)`` on the position manager no longer lists it. The
farm subgraph keeps the ``userPositions`` of each wallet with the farm pool
and accrued reward, and is queried with a bearer API key.

Ref: https://thegraph.com/docs/en/querying/querying-the-graph/
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

STAKED_POSITIONS_QUERY = """
query StakedPositions($user: String!) {
  userPositions(
    where: { user: $user, liquidity_gt: "0" }
    orderBy: timestamp
    orderDirection: desc
    first: 100
  ) {
    id
    pool {
      id
      v3Pool
      allocPoint
      masterChef {
        id
        totalAllocPoint
        latestPeriodCakePerSecond
        latestPeriodEndTime
      }
    }
    tickLower
    tickUpper
    liquidity
    timestamp
    block
    earned
    isStaked
  }
}
"""


class SubgraphClient:
    """GraphQL client for the MasterChef V3 subgraph."""

    def __init__(self, url: Optional[str], api_key: str = "", timeout: int = 20):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout

    async def query(self, query: str, variables: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        POST one GraphQL query and return its ``data`` object.

        Returns None (after logging) when no credential is configured, on
        transport or HTTP failure, or when the response carries ``errors``.
        """
        if not self.url:
            logger.info("No farm subgraph configured, skipping subgraph query")
            return None

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, verify=True) as client:
                response = await client.post(
                    self.url, json={"query": query, "variables": variables}, headers=headers
                )
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("Subgraph request failed: %s", exc)
            return None

        if data.get("errors"):
            logger.error("Subgraph error: %s", data["errors"])
            return None
        return data.get("data") or {}

    async def staked_positions(self, owner: str) -> List[Dict[str, Any]]:
        """Staked position records of ``owner`` with liquidity > 0 (newest first)."""
        data = await self.query(STAKED_POSITIONS_QUERY, {"user": owner.lower()})
        if not data:
            return []
        return data.get("userPositions") or []
