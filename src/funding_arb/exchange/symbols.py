"""Symbol translation between canonical and venue notations.

Canonical form is BASEQUOTE with no separator (e.g. "BTCUSDT"). Venues use:

  binance  BTCUSDT
  mexc     BTCUSDT
  okx      BTC-USDT-SWAP
  gateio   BTC_USDT
  bingx    BTC-USDT
  ccxt     BTC/USDT:USDT  (unified linear perpetual)

All functions are pure and total over symbols quoted in a known quote asset.
"""

from funding_arb.exceptions import ValidationError

# Longest first so "USDC" is not mistaken for a "USD"-quoted symbol
QUOTE_ASSETS = ("USDT", "USDC", "BUSD", "USD")

_OKX_SWAP_SUFFIX = "-SWAP"


def split_canonical(symbol: str) -> tuple[str, str]:
    """Split "BTCUSDT" into ("BTC", "USDT").

    Raises:
        ValidationError: If the symbol does not end in a known quote asset.
    """
    upper = symbol.upper()
    for quote in QUOTE_ASSETS:
        if upper.endswith(quote) and len(upper) > len(quote):
            return upper[: -len(quote)], quote
    raise ValidationError(f"Unrecognized symbol: {symbol}")


def to_ccxt_symbol(symbol: str) -> str:
    """Canonical -> ccxt unified linear perpetual ("BTC/USDT:USDT")."""
    base, quote = split_canonical(symbol)
    return f"{base}/{quote}:{quote}"


def from_ccxt_symbol(ccxt_symbol: str) -> str:
    """ccxt unified ("BTC/USDT:USDT" or "BTC/USDT") -> canonical."""
    pair = ccxt_symbol.split(":", 1)[0]
    if "/" not in pair:
        raise ValidationError(f"Not a ccxt unified symbol: {ccxt_symbol}")
    base, quote = pair.split("/", 1)
    return f"{base}{quote}".upper()


def to_venue_symbol(exchange: str, symbol: str) -> str:
    """Canonical -> venue-native perpetual contract id."""
    base, quote = split_canonical(symbol)
    if exchange == "okx":
        return f"{base}-{quote}{_OKX_SWAP_SUFFIX}"
    if exchange == "gateio":
        return f"{base}_{quote}"
    if exchange == "bingx":
        return f"{base}-{quote}"
    if exchange in ("binance", "mexc"):
        return f"{base}{quote}"
    raise ValidationError(f"Unknown exchange: {exchange}")


def from_venue_symbol(exchange: str, venue_symbol: str) -> str:
    """Venue-native perpetual contract id -> canonical."""
    raw = venue_symbol.upper()
    if exchange == "okx":
        if raw.endswith(_OKX_SWAP_SUFFIX):
            raw = raw[: -len(_OKX_SWAP_SUFFIX)]
        return raw.replace("-", "")
    if exchange == "gateio":
        return raw.replace("_", "")
    if exchange == "bingx":
        return raw.replace("-", "")
    if exchange in ("binance", "mexc"):
        return raw.replace("_", "")
    raise ValidationError(f"Unknown exchange: {exchange}")
