"""Last-trade price lookup.

Prices come from Hyperliquid's public mid-price snapshot (no auth needed).
Calls are blocking; the tick runner puts them on a worker thread and bounds
them with a timeout.
"""

import logging
import math
import threading

from hyperliquid.info import Info

from trailstop.config import settings
from trailstop.engine.errors import PriceUnavailable

logger = logging.getLogger(__name__)

_QUOTE_SUFFIXES = ("USDT", "USDC", "USD", "PERP")


def to_hl_ticker(symbol: str) -> str:
    """Convert an exchange symbol to Hyperliquid's coin name.

    "BTC/USDT" -> "BTC", "ETH-PERP" -> "ETH", "1000PEPE/USDT" -> "kPEPE".
    Hyperliquid uses 'kX' instead of '1000X'.
    """
    base = symbol.upper().replace("-", "/").split("/")[0].split(":")[0]
    if "/" not in symbol and "-" not in symbol:
        for suffix in _QUOTE_SUFFIXES:
            if base.endswith(suffix) and len(base) > len(suffix):
                base = base[: -len(suffix)]
                break
    if base.startswith("1000"):
        return "k" + base[4:]
    return base


class HyperliquidPriceSource:
    """Price source backed by Info.all_mids(). Safe to call from many threads."""

    def __init__(self, base_url: str | None = None):
        self.base_url = base_url or settings.hyperliquid_base_url or None
        self._info: Info | None = None
        self._lock = threading.Lock()

    def _client(self) -> Info:
        # Info() fetches exchange metadata on construction, so build it lazily
        with self._lock:
            if self._info is None:
                try:
                    self._info = Info(base_url=self.base_url, skip_ws=True)
                except Exception as e:
                    raise PriceUnavailable(f"Hyperliquid client unavailable: {e}") from e
            return self._info

    def fetch_last_price(self, symbol: str) -> float:
        coin = to_hl_ticker(symbol)
        try:
            mids = self._client().all_mids()
        except PriceUnavailable:
            raise
        except Exception as e:
            raise PriceUnavailable(f"Error fetching price for {symbol} ({coin}): {e}") from e

        raw = mids.get(coin)
        if raw is None:
            raise PriceUnavailable(f"No price for {symbol} ({coin})")
        try:
            price = float(raw)
        except (TypeError, ValueError):
            raise PriceUnavailable(f"Unparseable price {raw!r} for {symbol}")
        if math.isnan(price) or price <= 0:
            raise PriceUnavailable(f"Invalid price {price} for {symbol}")
        return price


_default_source: HyperliquidPriceSource | None = None


def get_price_source() -> HyperliquidPriceSource:
    global _default_source
    if _default_source is None:
        _default_source = HyperliquidPriceSource()
    return _default_source
