"""
Application Configuration using Pydantic Settings

Type-safe environment variable loading with validation.
A single immutable Settings object is built once and handed to every
component at construction time.
"""

from decimal import Decimal
from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from luna_deposits.chains.assets import Asset, Network, to_minor_units


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables

    Automatically loads from:
    1. Environment variables
    2. .env file (if present)
    3. Default values (specified below)

    Usage:
        from luna_deposits.core.config import get_settings

        settings = get_settings()
        engine = SettlementEngine(db, clients, rates, settings)
    """

    # Application Settings
    ENVIRONMENT: str = "development"

    # Database Settings
    DATABASE_URL: str = "sqlite:///./luna_deposits.db"

    # CORS Settings (default: localhost dev server; set explicit domains in production)
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    # Logging Settings
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # "text" or "json"

    # Rate Limiting
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # TRON (TRC-20 USDT)
    TRON_API_URL: str = "https://api.trongrid.io"
    TRON_API_KEY: Optional[str] = None
    TRON_USDT_CONTRACT: str = "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t"
    TRON_DEPOSIT_ADDRESS: Optional[str] = None

    # BNB Smart Chain (native BNB)
    BSC_RPC_URL: str = "https://bsc-dataseed.binance.org"
    BSC_CHAIN_ID: int = 56
    BSC_DEPOSIT_ADDRESS: Optional[str] = None
    BSC_CONFIRMATIONS: int = 15

    # Ethereum mainnet (native ETH)
    ETH_RPC_URL: str = "https://cloudflare-eth.com"
    ETH_CHAIN_ID: int = 1
    ETH_DEPOSIT_ADDRESS: Optional[str] = None
    ETH_CONFIRMATIONS: int = 12

    # Deposit minimums (in whole asset units)
    MIN_DEPOSIT_USDT_TRC20: Decimal = Decimal("1")
    MIN_DEPOSIT_BNB_BSC: Decimal = Decimal("0.001")
    MIN_DEPOSIT_ETH: Decimal = Decimal("0.001")

    # Chain API behaviour
    CHAIN_REQUEST_TIMEOUT_SECONDS: float = 10.0
    CHAIN_RETRY_ATTEMPTS: int = 3
    CHAIN_RETRY_DELAY_SECONDS: float = 1.0

    # Exchange rates
    RATES_API_URL: str = "https://api.coingecko.com/api/v3/simple/price"
    RATES_TIMEOUT_SECONDS: float = 5.0
    FIAT_CURRENCY: str = "usd"

    # Settlement policy
    ACCEPT_OVERPAYMENT: bool = False

    # Background poller
    POLLER_ENABLED: bool = False
    POLLING_INTERVAL_SECONDS: int = 30
    POLLER_BATCH_SIZE: int = 50
    INTENT_TTL_MINUTES: int = 24 * 60
    # A bound reference the chain still does not know after this long fails the intent
    REFERENCE_TTL_MINUTES: int = 24 * 60

    # Pydantic Settings Configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        frozen=True,
    )

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.ENVIRONMENT == "production"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse ALLOWED_ORIGINS into a list"""
        if self.ALLOWED_ORIGINS == "*":
            return ["*"]
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",")]

    @property
    def use_json_logs(self) -> bool:
        """Check if JSON logging is enabled"""
        return self.LOG_FORMAT == "json"

    def deposit_address_for(self, asset: Asset) -> Optional[str]:
        """Platform receiving address for an asset, None if the asset is disabled"""
        return {
            Network.TRON: self.TRON_DEPOSIT_ADDRESS,
            Network.BSC: self.BSC_DEPOSIT_ADDRESS,
            Network.ETHEREUM: self.ETH_DEPOSIT_ADDRESS,
        }[asset.network]

    def min_deposit_minor(self, asset: Asset) -> int:
        """Minimum deposit for an asset in minor units"""
        minimum = {
            Asset.USDT_TRC20: self.MIN_DEPOSIT_USDT_TRC20,
            Asset.BNB_BSC: self.MIN_DEPOSIT_BNB_BSC,
            Asset.ETH: self.MIN_DEPOSIT_ETH,
        }[asset]
        return to_minor_units(minimum, asset)

    def chain_id_for(self, network: Network) -> Optional[int]:
        return {
            Network.BSC: self.BSC_CHAIN_ID,
            Network.ETHEREUM: self.ETH_CHAIN_ID,
        }.get(network)


def validate_settings(settings: Settings) -> Settings:
    """Fail fast if unsafe values are used in production"""
    if settings.is_production:
        if settings.DATABASE_URL.startswith("sqlite"):
            raise ValueError("SQLite is not allowed in production. Set DATABASE_URL to PostgreSQL.")

        if settings.ALLOWED_ORIGINS == "*":
            raise ValueError("CORS wildcard '*' is not allowed in production. Set ALLOWED_ORIGINS to specific domains.")

    return settings


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance"""
    return validate_settings(Settings())
