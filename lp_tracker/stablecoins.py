"""
Stablecoin Detection — Quote-Side Selection
============================================

Decides how a pair is priced:
  - Quote side: prices are expressed as quote-token per base-token.
    The quote is the stablecoin side when exactly one side is a stablecoin,
    otherwise token1 (the pool's native price orientation).
  - USD fallback: a USD-pegged token without a market quote is valued at $1.

Known stablecoins are recognized by normalized symbol.
Sources: CoinGecko stablecoin category, DeFiLlama stablecoin tracker.
"""

# ── Known Stablecoin Symbols ────────────────────────────────────────────
# Normalized to uppercase. Includes bridged variants (.e, .b, etc.)

USD_PEGGED_SYMBOLS: frozenset = frozenset({
    # major
    "USDC", "USDT", "DAI", "BUSD", "TUSD", "FRAX", "LUSD",
    "USDP", "GUSD", "SUSD", "USDD", "PYUSD", "GHO",
    "FDUSD", "CRVUSD", "USDS",

    # bridged variants
    "USDC.E", "USDT.E", "DAI.E",
    "USDBC", "USDCE",                     # Base variants
    "AXLUSDC",
})

STABLECOIN_SYMBOLS: frozenset = USD_PEGGED_SYMBOLS | frozenset({
    # EUR-pegged (treated as stable for quote selection)
    "EURS", "EURT", "AGEUR", "EURC",
    # Algorithmic / CDP stables
    "MIM", "DOLA", "ALUSD",
})


def is_stablecoin(symbol: str) -> bool:
    """
    Check if a token symbol is a known stablecoin.

    Examples:
        >>> is_stablecoin("USDC")
        True
        >>> is_stablecoin("usdt.e")
        True
        >>> is_stablecoin("WETH")
        False
    """
    return symbol.strip().upper() in STABLECOIN_SYMBOLS


def is_usd_pegged(symbol: str) -> bool:
    return symbol.strip().upper() in USD_PEGGED_SYMBOLS


def stablecoin_side(symbol0: str, symbol1: str) -> int:
    """
    Identify which side of the pair is the stablecoin.

    Returns:
        0  — token0 is the stablecoin
        1  — token1 is the stablecoin
        -1 — neither or both are stablecoins
    """
    s0 = is_stablecoin(symbol0)
    s1 = is_stablecoin(symbol1)
    if s0 and not s1:
        return 0
    elif s1 and not s0:
        return 1
    return -1


def quote_side(symbol0: str, symbol1: str) -> int:
    """
    Side (0 or 1) whose token prices are expressed in.

    Examples:
        >>> quote_side("USDC", "WETH")
        0
        >>> quote_side("WETH", "CAKE")
        1
        >>> quote_side("USDC", "USDT")
        1
    """
    side = stablecoin_side(symbol0, symbol1)
    return 1 if side == -1 else side
