"""
Exchange Rate Provider

Asset -> fiat rates from a CoinGecko-style `simple/price` endpoint.
Rates only feed the informational fiat equivalent shown with a deposit
quote; they never change the credited crypto amount, so any failure falls
back to a static table instead of blocking the deposit.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

import httpx

from luna_deposits.chains.assets import ASSET_SPECS, Asset
from luna_deposits.core.logging_config import get_logger

logger = get_logger()

# USD; used when the remote source is unavailable
FALLBACK_RATES: Dict[Asset, Decimal] = {
    Asset.USDT_TRC20: Decimal("1.0"),
    Asset.BNB_BSC: Decimal("300.0"),
    Asset.ETH: Decimal("2000.0"),
}

SOURCE_REMOTE = "remote"
SOURCE_PARTIAL = "partial"
SOURCE_FALLBACK = "fallback"


@dataclass(frozen=True)
class ExchangeRateSnapshot:
    rates: Dict[Asset, Decimal]
    source: str
    fiat_currency: str
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def rate_for(self, asset: Asset) -> Decimal:
        return self.rates[asset]


class ExchangeRateProvider:
    """
    Fetches current asset prices

    Usage:
        provider = ExchangeRateProvider(settings.RATES_API_URL, "usd")
        snapshot = await provider.get_rates()
        snapshot.rate_for(Asset.ETH)
    """

    def __init__(
        self,
        api_url: str,
        fiat_currency: str = "usd",
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url
        self.fiat_currency = fiat_currency.lower()
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def close(self) -> None:
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    def fallback_snapshot(self) -> ExchangeRateSnapshot:
        return ExchangeRateSnapshot(
            rates=dict(FALLBACK_RATES),
            source=SOURCE_FALLBACK,
            fiat_currency=self.fiat_currency,
        )

    async def get_rates(self) -> ExchangeRateSnapshot:
        """
        Current rates for every supported asset

        Never raises: transport errors, HTTP errors and malformed bodies all
        yield the fallback table. Assets missing from the response are
        filled from the fallback and the snapshot is marked partial.
        """
        ids = ",".join(sorted({spec.rate_id for spec in ASSET_SPECS.values()}))
        try:
            client = await self._get_client()
            response = await client.get(
                self.api_url,
                params={"ids": ids, "vs_currencies": self.fiat_currency},
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Exchange rate fetch failed, using fallback rates", extra={"error": str(e)})
            return self.fallback_snapshot()

        if not isinstance(body, dict):
            logger.warning("Exchange rate response is not an object, using fallback rates")
            return self.fallback_snapshot()

        rates: Dict[Asset, Decimal] = {}
        missing = []
        for asset, spec in ASSET_SPECS.items():
            rate = self._parse_rate(body.get(spec.rate_id))
            if rate is None:
                missing.append(asset.value)
                rates[asset] = FALLBACK_RATES[asset]
            else:
                rates[asset] = rate

        if len(missing) == len(ASSET_SPECS):
            logger.warning("Exchange rate response had no usable prices, using fallback rates")
            return self.fallback_snapshot()

        if missing:
            logger.info("Exchange rates partially filled from fallback", extra={"missing_assets": missing})

        return ExchangeRateSnapshot(
            rates=rates,
            source=SOURCE_PARTIAL if missing else SOURCE_REMOTE,
            fiat_currency=self.fiat_currency,
        )

    def _parse_rate(self, entry) -> Optional[Decimal]:
        if not isinstance(entry, dict):
            return None
        value = entry.get(self.fiat_currency)
        if value is None or isinstance(value, bool):
            return None
        try:
            # str() keeps the JSON float's shortest repr instead of its binary expansion
            rate = Decimal(str(value))
        except InvalidOperation:
            return None
        if not rate.is_finite() or rate <= 0:
            return None
        return rate
