"""
Unit Tests for the exchange rate provider
"""

from decimal import Decimal

import httpx
import pytest

from luna_deposits.chains.assets import Asset
from luna_deposits.services.rates import FALLBACK_RATES, ExchangeRateProvider

API_URL = "https://rates.test/api/v3/simple/price"


def provider_for(handler):
    return ExchangeRateProvider(API_URL, fiat_currency="usd", transport=httpx.MockTransport(handler))


@pytest.mark.unit
@pytest.mark.asyncio
async def test_remote_rates_are_parsed_exactly():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json={
            "tether": {"usd": 1.0001},
            "binancecoin": {"usd": 612.37},
            "ethereum": {"usd": 3120.5},
        })

    provider = provider_for(handler)
    snapshot = await provider.get_rates()
    await provider.close()

    assert snapshot.source == "remote"
    assert snapshot.fiat_currency == "usd"
    assert snapshot.rate_for(Asset.USDT_TRC20) == Decimal("1.0001")
    assert snapshot.rate_for(Asset.BNB_BSC) == Decimal("612.37")
    assert snapshot.rate_for(Asset.ETH) == Decimal("3120.5")
    assert seen["params"]["vs_currencies"] == "usd"
    assert set(seen["params"]["ids"].split(",")) == {"tether", "binancecoin", "ethereum"}


@pytest.mark.unit
@pytest.mark.asyncio
async def test_partial_response_is_filled_from_fallback():
    provider = provider_for(lambda request: httpx.Response(200, json={"ethereum": {"usd": 2500}}))
    snapshot = await provider.get_rates()

    assert snapshot.source == "partial"
    assert snapshot.rate_for(Asset.ETH) == Decimal("2500")
    assert snapshot.rate_for(Asset.USDT_TRC20) == FALLBACK_RATES[Asset.USDT_TRC20]
    assert snapshot.rate_for(Asset.BNB_BSC) == FALLBACK_RATES[Asset.BNB_BSC]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_http_error_falls_back():
    provider = provider_for(lambda request: httpx.Response(503, text="unavailable"))
    snapshot = await provider.get_rates()

    assert snapshot.source == "fallback"
    assert snapshot.rates == FALLBACK_RATES


@pytest.mark.unit
@pytest.mark.asyncio
async def test_transport_error_falls_back():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    snapshot = await provider_for(handler).get_rates()
    assert snapshot.source == "fallback"
    assert snapshot.rate_for(Asset.BNB_BSC) == Decimal("300.0")


@pytest.mark.unit
@pytest.mark.asyncio
async def test_malformed_body_falls_back():
    snapshot = await provider_for(lambda request: httpx.Response(200, text="<html>")).get_rates()
    assert snapshot.source == "fallback"

    snapshot = await provider_for(lambda request: httpx.Response(200, json=[1, 2, 3])).get_rates()
    assert snapshot.source == "fallback"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_nonsense_prices_are_ignored():
    """Zero, negative and non-numeric prices count as missing"""
    provider = provider_for(lambda request: httpx.Response(200, json={
        "tether": {"usd": 0},
        "binancecoin": {"usd": "abc"},
        "ethereum": {"usd": 2000.25},
    }))
    snapshot = await provider.get_rates()

    assert snapshot.source == "partial"
    assert snapshot.rate_for(Asset.USDT_TRC20) == Decimal("1.0")
    assert snapshot.rate_for(Asset.BNB_BSC) == Decimal("300.0")
    assert snapshot.rate_for(Asset.ETH) == Decimal("2000.25")
