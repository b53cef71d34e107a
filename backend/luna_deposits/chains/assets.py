"""
Supported deposit assets and exact minor-unit arithmetic

Every amount inside the service is an int in the asset's smallest unit
(sun for TRC-20 USDT, wei for BNB/ETH). Decimal is only used at the edges
(API input/output, display) and conversions never round.
"""

import enum
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, localcontext
from typing import Union

# uint256 has 78 decimal digits; keep headroom for the fractional part
_DECIMAL_PRECISION = 100


class Network(str, enum.Enum):
    TRON = "tron"
    BSC = "bsc"
    ETHEREUM = "ethereum"


@dataclass(frozen=True)
class AssetSpec:
    symbol: str
    network: Network
    decimals: int
    rate_id: str  # CoinGecko coin id


class Asset(str, enum.Enum):
    """Deposit asset: a coin or token on a specific network"""

    USDT_TRC20 = "usdt_trc20"
    BNB_BSC = "bnb_bsc"
    ETH = "eth"

    @property
    def spec(self) -> AssetSpec:
        return ASSET_SPECS[self]

    @property
    def network(self) -> Network:
        return ASSET_SPECS[self].network

    @property
    def decimals(self) -> int:
        return ASSET_SPECS[self].decimals

    @property
    def symbol(self) -> str:
        return ASSET_SPECS[self].symbol


ASSET_SPECS = {
    Asset.USDT_TRC20: AssetSpec(symbol="USDT", network=Network.TRON, decimals=6, rate_id="tether"),
    Asset.BNB_BSC: AssetSpec(symbol="BNB", network=Network.BSC, decimals=18, rate_id="binancecoin"),
    Asset.ETH: AssetSpec(symbol="ETH", network=Network.ETHEREUM, decimals=18, rate_id="ethereum"),
}


def parse_asset(value: Union[str, Asset]) -> Asset:
    """
    Resolve an asset from its value ("usdt_trc20") or name ("USDT_TRC20")

    Raises:
        ValueError: If the asset is not supported
    """
    if isinstance(value, Asset):
        return value
    try:
        return Asset(value.lower())
    except ValueError:
        supported = ", ".join(a.value for a in Asset)
        raise ValueError(f"Unsupported asset '{value}'. Supported: {supported}") from None


def to_minor_units(amount: Union[Decimal, int, str], asset: Asset) -> int:
    """
    Convert a whole-unit amount into minor units without rounding

    Args:
        amount: Amount in whole units, e.g. Decimal("50.000000") USDT
        asset: Asset that defines the precision

    Returns:
        int: Amount in the asset's smallest unit

    Raises:
        ValueError: If the amount is not a finite number or has more
            fractional digits than the asset supports

    Examples:
        >>> to_minor_units("50", Asset.USDT_TRC20)
        50000000
        >>> to_minor_units("0.000000000000000001", Asset.ETH)
        1
    """
    if isinstance(amount, float):
        raise ValueError("Float amounts are not accepted; pass a Decimal or a string")

    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except InvalidOperation:
        raise ValueError(f"Invalid amount: {amount!r}") from None

    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")

    with localcontext() as ctx:
        ctx.prec = _DECIMAL_PRECISION
        scaled = value.scaleb(asset.decimals)
        if scaled != scaled.to_integral_value():
            raise ValueError(
                f"{asset.symbol} supports at most {asset.decimals} decimal places"
            )
        return int(scaled)


def from_minor_units(amount_minor: int, asset: Asset) -> Decimal:
    """Convert minor units back to an exact Decimal in whole units"""
    with localcontext() as ctx:
        ctx.prec = _DECIMAL_PRECISION
        return Decimal(int(amount_minor)).scaleb(-asset.decimals)


def format_amount(amount_minor: int, asset: Asset) -> str:
    """Fixed-point string at the asset's full precision ("50.000000")"""
    value = from_minor_units(amount_minor, asset)
    with localcontext() as ctx:
        ctx.prec = _DECIMAL_PRECISION
        return f"{value:.{asset.decimals}f}"
