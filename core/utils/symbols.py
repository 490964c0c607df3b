"""
Symbol Utilities

Pair strings arrive in many spellings ("btc/usdt", "BTC-USDT", "BTCUSDT").
Everything downstream keys on the normalized concatenated form, and the
provider needs the pair split into base and quote asset.
"""

from typing import Tuple

# Stablecoins are matched before fiats so "BTCUSDT" resolves to USDT, not USD.
QUOTE_ASSETS = (
    "USDT",
    "USDC",
    "BUSD",
    "TUSD",
    "DAI",
    "UST",
    "USD",
    "EUR",
    "GBP",
    "JPY",
    "RUB",
    "AUD",
    "CAD",
)

DEFAULT_QUOTE = "USD"


def normalize_symbol(symbol: str) -> str:
    """
    Uppercase a pair and strip separators.

    Example:
        >>> normalize_symbol("btc/usdt")
        'BTCUSDT'
    """
    cleaned = symbol.strip().upper()
    for sep in ("-", "_", "/", " "):
        cleaned = cleaned.replace(sep, "")
    return cleaned


def split_symbol(symbol: str) -> Tuple[str, str]:
    """
    Split a concatenated pair into (base, quote).

    Example:
        >>> split_symbol("ETHEUR")
        ('ETH', 'EUR')
        >>> split_symbol("XYZ")
        ('XYZ', 'USD')
    """
    normalized = normalize_symbol(symbol)
    for quote in QUOTE_ASSETS:
        if normalized.endswith(quote) and len(normalized) > len(quote):
            return normalized[: -len(quote)], quote
    return normalized, DEFAULT_QUOTE
