#!/usr/bin/env python3
"""
RPC Helpers — ABI Encoding/Decoding and JSON-RPC Client
=======================================================

Low-level EVM primitives shared by position_reader.py, position_indexer.py
and event_scanner.py:

  • ABI encoding/decoding (uint256, int256, address, uint24, int24, string)
  • JSON-RPC client (eth_call, eth_call_batch, eth_blockNumber, eth_getLogs,
    eth_getBlockByNumber, eth_getTransactionReceipt)
  • Function selectors and event topics
  • Named constants for ABI word sizes and Q-values

All constants reference the Ethereum ABI specification:
  https://docs.soliditylang.org/en/latest/abi-spec.html

Terminology:
  • Word:  32 bytes = 256 bits = 64 hex characters
  • Slot:  Position of a 32-byte word in an ABI response
  • Topic: 32-byte indexed log field; topic[0] = keccak256(event signature)
  • Q96:   2^96  — fixed-point denominator for sqrtPriceX96
  • Q128:  2^128 — fixed-point denominator for feeGrowthX128
  • Q256:  2^256 — two's complement boundary for int256
"""

from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from eth_utils import keccak

# ── ABI Word Constants ──────────────────────────────────────────────────
# Ethereum ABI spec: https://docs.soliditylang.org/en/latest/abi-spec.html

ABI_WORD_BYTES = 32          # 1 ABI word = 32 bytes
ABI_WORD_HEX = 64            # 32 bytes × 2 hex chars = 64 hex characters
ADDRESS_HEX = 40              # 20 bytes × 2 = 40 hex characters
ADDRESS_PAD_HEX = 24          # Left padding in a 32-byte slot = 64 - 40 = 24 hex chars
SIGN_BIT = 1 << 255           # Two's complement sign bit for int256
ZERO_ADDRESS = "0x" + "0" * ADDRESS_HEX

# ── Concentrated-Liquidity Fixed-Point Constants ────────────────────────
# Ref: Uniswap V3 Whitepaper §6.1, https://uniswap.org/whitepaper-v3.pdf

Q96 = 2 ** 96                # sqrtPriceX96 denominator (FixedPoint96.RESOLUTION)
Q128 = 2 ** 128              # feeGrowthGlobalX128 denominator (FixedPoint128.Q128)
Q256 = 2 ** 256              # int256 overflow boundary (two's complement wrap)

# ── Common Token Symbol Normalization ───────────────────────────────────
# Some on-chain symbols use non-standard Unicode or suffixes.

SYMBOL_MAP = {
    "USD₮0": "USDT",
    "USD₮": "USDT",
    "USDT0": "USDT",
    "USDbC": "USDbC",
    "USDC.e": "USDC.e",
}


def normalize_symbol(raw_symbol: str) -> str:
    """Normalize on-chain token symbol to common name."""
    cleaned = raw_symbol.strip().strip("\x00")
    return SYMBOL_MAP.get(cleaned, cleaned)


# ── Public RPC Endpoints ────────────────────────────────────────────────
# Used when RPC_URL is not configured. Free tiers are heavily rate-limited;
# a private endpoint is recommended for event scans.

RPC_URLS: dict[str, str] = {
    "base": "https://1rpc.io/base",
    "bsc": "https://1rpc.io/bnb",
    "ethereum": "https://1rpc.io/eth",
    "arbitrum": "https://1rpc.io/arb",
}


# ── Selectors & Topics ──────────────────────────────────────────────────


def function_selector(signature: str) -> str:
    """First 4 bytes of keccak256(signature), 0x-prefixed.

    >>> function_selector("slot0()")
    '0x3850c7bd'
    """
    return "0x" + keccak(text=signature)[:4].hex()


def event_topic(signature: str) -> str:
    """Full keccak256(signature) used as topic[0] of a log, 0x-prefixed."""
    return "0x" + keccak(text=signature).hex()


SELECTORS: dict[str, str] = {
    # NonfungiblePositionManager (ERC-721 Enumerable)
    "balanceOf":              "0x70a08231",  # balanceOf(address)
    "tokenOfOwnerByIndex":    "0x2f745c59",  # tokenOfOwnerByIndex(address,uint256)
    "positions":              "0x99fbab88",  # positions(uint256)
    "ownerOf":                "0x6352211e",  # ownerOf(uint256)

    # Pool (read-only state)
    "slot0":                  "0x3850c7bd",  # slot0()
    "liquidity":              "0x1a686502",  # liquidity()
    "feeGrowthGlobal0X128":   "0xf3058399",  # feeGrowthGlobal0X128()
    "feeGrowthGlobal1X128":   "0x46141319",  # feeGrowthGlobal1X128()
    "ticks":                  "0xf30dba93",  # ticks(int24)

    # Factory
    "getPool":                "0x1698ee82",  # getPool(address,address,uint24)

    # ERC-20 metadata
    "symbol":                 "0x95d89b41",  # symbol()
    "decimals":               "0x313ce567",  # decimals()

    # MasterChef V3 farm
    "pendingCake":            function_selector("pendingCake(uint256)"),
}

TOPICS: dict[str, str] = {
    # NonfungiblePositionManager
    "IncreaseLiquidity": event_topic("IncreaseLiquidity(uint256,uint128,uint256,uint256)"),
    "DecreaseLiquidity": event_topic("DecreaseLiquidity(uint256,uint128,uint256,uint256)"),
    "Collect":           event_topic("Collect(uint256,address,uint256,uint256)"),

    # ERC-20 / ERC-721
    "Transfer":          event_topic("Transfer(address,address,uint256)"),

    # MasterChef V3 farm
    "Deposit":           event_topic("Deposit(address,uint256,uint128,int24,int24)"),
    "Withdraw":          event_topic("Withdraw(address,uint256,uint128,int24,int24)"),
}


# ── ABI Encoding ────────────────────────────────────────────────────────

def encode_uint256(value: int) -> str:
    """ABI-encode a uint256 as 32-byte hex (no 0x prefix).

    >>> encode_uint256(1)
    '0000000000000000000000000000000000000000000000000000000000000001'
    """
    return format(value, f'0{ABI_WORD_HEX}x')


def encode_address(addr: str) -> str:
    """ABI-encode an address as 32 bytes (left-padded, no 0x prefix)."""
    return addr.lower().replace("0x", "").zfill(ABI_WORD_HEX)


def encode_uint24(val: int) -> str:
    """ABI-encode a uint24 as 32 bytes (for fee tier parameter).

    >>> encode_uint24(2500)
    '00000000000000000000000000000000000000000000000000000000000009c4'
    """
    return format(val, f'0{ABI_WORD_HEX}x')


def encode_int24(value: int) -> str:
    """ABI-encode an int24 sign-extended to int256 (for ticks)."""
    if value < 0:
        value = Q256 + value
    return format(value, f'0{ABI_WORD_HEX}x')


def topic_uint256(value: int) -> str:
    """uint256 as a 0x-prefixed log topic (indexed tokenId filters)."""
    return "0x" + encode_uint256(value)


def topic_address(addr: str) -> str:
    """Address as a 0x-prefixed log topic (indexed owner filters)."""
    return "0x" + encode_address(addr)


# ── ABI Decoding ────────────────────────────────────────────────────────

def decode_uint(hex_data: str, slot: int = 0) -> int:
    """Decode uint256 from ABI response at 32-byte slot offset.

    Args:
        hex_data: Hex string (without 0x prefix).
        slot: Which 32-byte word to read (0-indexed).
    """
    start = slot * ABI_WORD_HEX
    return int(hex_data[start:start + ABI_WORD_HEX], 16)


def decode_int(hex_data: str, slot: int = 0) -> int:
    """Decode int256 (two's complement) from ABI response."""
    val = decode_uint(hex_data, slot)
    if val >= SIGN_BIT:
        return val - Q256
    return val


def decode_address(hex_data: str, slot: int = 0) -> str:
    """Decode address (last 20 bytes of 32-byte slot)."""
    start = slot * ABI_WORD_HEX
    return "0x" + hex_data[start + ADDRESS_PAD_HEX:start + ABI_WORD_HEX]


def decode_string(hex_data: str) -> str:
    """Decode ABI-encoded dynamic string return value.

    Handles both standard dynamic strings (offset + length + data)
    and non-standard bytes32 returns from some token contracts.
    """
    try:
        offset = decode_uint(hex_data, 0)
        word_offset = offset // ABI_WORD_BYTES
        length = decode_uint(hex_data, word_offset)
        start_byte = (word_offset + 1) * ABI_WORD_HEX
        hex_str = hex_data[start_byte:start_byte + length * 2]
        return bytes.fromhex(hex_str).decode("utf-8").strip("\x00")
    except (ValueError, UnicodeDecodeError):
        # Some tokens return bytes32 instead of string
        try:
            raw = bytes.fromhex(hex_data[:ABI_WORD_HEX])
            return raw.decode("utf-8").strip("\x00").strip()
        except (ValueError, UnicodeDecodeError):
            return "UNK"


def strip_0x(value: str) -> str:
    return value[2:] if value.startswith("0x") else value


def block_tag(block: Optional[int]) -> str:
    """JSON-RPC block parameter: ``None`` → ``"latest"``, int → hex quantity."""
    if block is None:
        return "latest"
    return hex(block)


# ── JSON-RPC Client ─────────────────────────────────────────────────────

async def rpc_request(
    rpc_url: str, method: str, params: Sequence[Any], timeout: int = 20
) -> Any:
    """
    Send one JSON-RPC request and return its ``result`` field.

    Raises:
        RuntimeError: If the node returns an error object.
    """
    payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": list(params)}
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payload)
        result = resp.json()
        if "error" in result:
            error = result["error"]
            message = error.get("message", error) if isinstance(error, dict) else error
            raise RuntimeError(f"RPC error: {message}")
        return result.get("result")


async def eth_call(
    rpc_url: str, to: str, data: str, timeout: int = 20, block: Optional[int] = None
) -> str:
    """
    Execute eth_call on an EVM node.

    Args:
        rpc_url: JSON-RPC endpoint URL
        to: Contract address (0x...)
        data: ABI-encoded calldata (0x + selector + params)
        timeout: HTTP timeout in seconds
        block: Historical block number, or None for "latest"

    Returns:
        Hex response string (without 0x prefix).

    Raises:
        RuntimeError: If RPC returns an error or empty response.
    """
    payload = {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "eth_call",
        "params": [{"to": to, "data": data}, block_tag(block)],
    }
    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payload)
        result = resp.json()
        if "error" in result:
            raise RuntimeError(f"RPC error: {result['error'].get('message', result['error'])}")
        raw = result.get("result", "0x")
        if raw == "0x" or len(raw) < 4:
            raise RuntimeError("Empty response — contract may not exist at this address")
        return raw[2:]  # strip 0x prefix


async def eth_call_batch(
    rpc_url: str,
    calls: List[Tuple[str, str]],
    timeout: int = 20,
    block: Optional[int] = None,
) -> List[str]:
    """
    Batch multiple eth_call requests into a single HTTP request.

    Returns:
        List of hex result strings (without 0x prefix), in same order as calls.
        Failed calls come back as empty strings.
    """
    tag = block_tag(block)
    payloads = []
    for i, (to, data) in enumerate(calls):
        payloads.append({
            "jsonrpc": "2.0",
            "id": i + 1,
            "method": "eth_call",
            "params": [{"to": to, "data": data}, tag],
        })

    async with httpx.AsyncClient(timeout=timeout) as client:
        resp = await client.post(rpc_url, json=payloads)
        results = resp.json()

    if isinstance(results, list):
        results.sort(key=lambda r: r.get("id", 0))
        return [r.get("result", "0x")[2:] if "result" in r else "" for r in results]
    else:
        # Single result (some RPCs don't support batch)
        return [results.get("result", "0x")[2:]]


async def eth_block_number(rpc_url: str, timeout: int = 10) -> int:
    """Get the latest block number from an EVM node."""
    result = await rpc_request(rpc_url, "eth_blockNumber", [], timeout)
    return int(result, 16)


async def eth_get_logs(
    rpc_url: str,
    address: str,
    topics: List[Any],
    from_block: int,
    to_block: int,
    timeout: int = 30,
) -> List[Dict[str, Any]]:
    """
    Fetch raw logs for one contract over an inclusive block range.

    ``topics`` follows the JSON-RPC filter rules: each position is a topic,
    a list of alternative topics, or None (wildcard).
    """
    log_filter = {
        "address": address,
        "topics": topics,
        "fromBlock": hex(from_block),
        "toBlock": hex(to_block),
    }
    result = await rpc_request(rpc_url, "eth_getLogs", [log_filter], timeout)
    return result or []


async def eth_get_block_timestamp(rpc_url: str, block: int, timeout: int = 20) -> int:
    """Unix timestamp of a block (header only, no transactions)."""
    result = await rpc_request(rpc_url, "eth_getBlockByNumber", [hex(block), False], timeout)
    if not result:
        raise RuntimeError(f"Block {block} not found")
    return int(result["timestamp"], 16)


async def eth_get_transaction_receipt(
    rpc_url: str, tx_hash: str, timeout: int = 20
) -> Dict[str, Any]:
    """Receipt of a mined transaction (including its logs)."""
    result = await rpc_request(rpc_url, "eth_getTransactionReceipt", [tx_hash], timeout)
    if not result:
        raise RuntimeError(f"Receipt not found for {tx_hash}")
    return result
