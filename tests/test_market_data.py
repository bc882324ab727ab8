"""Tests for symbol mapping and the Hyperliquid price source."""

from unittest.mock import patch

import pytest

from trailstop.engine.errors import PriceUnavailable
from trailstop.services.market_data import HyperliquidPriceSource, to_hl_ticker


@pytest.mark.parametrize("symbol, coin", [
    ("BTC/USDT", "BTC"),
    ("eth/usdc", "ETH"),
    ("SOLUSDT", "SOL"),
    ("ETH-PERP", "ETH"),
    ("BTC/USDT:USDT", "BTC"),
    ("1000PEPE/USDT", "kPEPE"),
    ("HYPE", "HYPE"),
])
def test_to_hl_ticker(symbol, coin):
    assert to_hl_ticker(symbol) == coin


@pytest.fixture
def info():
    with patch("trailstop.services.market_data.Info") as info_cls:
        yield info_cls.return_value


def test_fetch_last_price(info):
    info.all_mids.return_value = {"BTC": "64250.5", "ETH": "3100"}
    source = HyperliquidPriceSource(base_url="https://api.example")
    assert source.fetch_last_price("BTC/USDT") == 64250.5
    assert source.fetch_last_price("ETH/USDT") == 3100.0


def test_client_is_built_once():
    with patch("trailstop.services.market_data.Info") as info_cls:
        info_cls.return_value.all_mids.return_value = {"BTC": "1"}
        source = HyperliquidPriceSource()
        source.fetch_last_price("BTC")
        source.fetch_last_price("BTC")
    info_cls.assert_called_once()


@pytest.mark.parametrize("mids", [{}, {"BTC": "abc"}, {"BTC": "0"}, {"BTC": "-3"}])
def test_bad_prices_are_unavailable(info, mids):
    info.all_mids.return_value = mids
    with pytest.raises(PriceUnavailable):
        HyperliquidPriceSource().fetch_last_price("BTC/USDT")


def test_network_error_is_unavailable(info):
    info.all_mids.side_effect = ConnectionError("reset by peer")
    with pytest.raises(PriceUnavailable, match="reset by peer"):
        HyperliquidPriceSource().fetch_last_price("BTC/USDT")


def test_client_construction_error_is_unavailable():
    with patch("trailstop.services.market_data.Info", side_effect=OSError("dns")):
        with pytest.raises(PriceUnavailable, match="dns"):
            HyperliquidPriceSource().fetch_last_price("BTC/USDT")
