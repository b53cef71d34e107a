"""
Pytest Configuration and Fixtures

Shared test fixtures for backend testing
"""

import os
import re

# Must be set before luna_deposits is imported: the session module builds its engine from it
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    "sqlite:///./test_luna_deposits.db"
)
os.environ["DATABASE_URL"] = TEST_DATABASE_URL

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker

from luna_deposits.chains.assets import Asset, Network
from luna_deposits.chains.base import (
    ChainClient,
    ConfirmationStatus,
    FeeEstimate,
    TransactionConfirmation,
)
from luna_deposits.chains.tron import tron_address_from_hex, tron_address_to_hex
from luna_deposits.core.config import Settings
from luna_deposits.db.models import Base
from luna_deposits.services.rates import ExchangeRateProvider
from luna_deposits.services.settlement import SettlementEngine

is_sqlite = TEST_DATABASE_URL.startswith("sqlite")

if is_sqlite:
    test_engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": 60}
    )
else:
    test_engine = create_engine(
        TEST_DATABASE_URL,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True
    )

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

# Platform deposit addresses used throughout the tests
TRON_DEPOSIT_ADDRESS = tron_address_from_hex("41" + "a1" * 20)
TRON_OTHER_ADDRESS = tron_address_from_hex("41" + "b2" * 20)
BSC_DEPOSIT_ADDRESS = "0x" + "bb" * 20
ETH_DEPOSIT_ADDRESS = "0x" + "ee" * 20

_TX_HASH_RE = re.compile(r"^[0-9a-f]{64}$")


def tx_hash(seed: int) -> str:
    """Deterministic 64-hex transaction reference"""
    return f"{seed:064x}"


@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """
    Set up test database tables once for entire test session

    autouse=True means this runs automatically before any tests
    """
    if is_sqlite and os.path.exists("test_luna_deposits.db"):
        try:
            os.remove("test_luna_deposits.db")
        except PermissionError:
            pass

    Base.metadata.create_all(bind=test_engine)
    yield
    Base.metadata.drop_all(bind=test_engine)

    test_engine.dispose()

    if is_sqlite and os.path.exists("test_luna_deposits.db"):
        try:
            os.remove("test_luna_deposits.db")
        except PermissionError:
            pass


def _clean_tables(db):
    db.execute(text("DELETE FROM wallet_transactions"))
    db.execute(text("DELETE FROM wallet_balances"))
    db.execute(text("DELETE FROM payment_intents"))
    db.commit()


@pytest.fixture(scope="function")
def test_db_session():
    """
    Create fresh database session for each test

    Scope: function (new session per test)
    Tables are emptied afterwards so committed rows don't leak between tests
    """
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        try:
            db.rollback()
            _clean_tables(db)
        except Exception:
            db.rollback()
        finally:
            db.close()


@pytest.fixture
def test_settings():
    """Settings with every network enabled and no .env lookup"""
    return Settings(
        _env_file=None,
        DATABASE_URL=TEST_DATABASE_URL,
        TRON_DEPOSIT_ADDRESS=TRON_DEPOSIT_ADDRESS,
        BSC_DEPOSIT_ADDRESS=BSC_DEPOSIT_ADDRESS,
        ETH_DEPOSIT_ADDRESS=ETH_DEPOSIT_ADDRESS,
        CHAIN_RETRY_DELAY_SECONDS=0,
    )


class FakeChainClient(ChainClient):
    """
    Scripted chain client

    Unknown references are reported as not found until a confirmation
    (or an exception to raise) is scripted for them.
    """

    def __init__(self, network: Network, assets):
        self.network = network
        self._assets = tuple(assets)
        self.outcomes = {}
        self.calls = []

    @property
    def supported_assets(self):
        return self._assets

    def script(self, reference, outcome):
        self.outcomes[self.normalize_reference(reference)] = outcome

    def finalize(self, reference, amount_minor, recipient, asset=None):
        self.script(reference, TransactionConfirmation(
            reference=self.normalize_reference(reference),
            status=ConfirmationStatus.FINALIZED,
            amount_minor=amount_minor,
            recipient=recipient,
            asset=asset or self._assets[0],
            confirmations=20,
        ))

    async def confirm_transaction(self, reference):
        self.calls.append(reference)
        outcome = self.outcomes.get(reference)
        if outcome is None:
            return TransactionConfirmation(
                reference=reference,
                status=ConfirmationStatus.NOT_FOUND,
                reason="transaction not found",
            )
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def get_balance(self, address, asset):
        return 0

    async def estimate_fee(self):
        asset = self._assets[0]
        return FeeEstimate(amount_minor=1_000_000, fee_symbol=asset.symbol, decimals=asset.decimals, estimated=True)

    async def submit_transfer(self, signed_transaction):
        return tx_hash(0xF00D)

    def build_payment_uri(self, address, asset, amount_minor, memo=None):
        return f"fake:{address}?asset={asset.value}&amount={amount_minor}"

    def normalize_address(self, address):
        if self.network is Network.TRON:
            tron_address_to_hex(address)
            return address
        return address.lower()

    def normalize_reference(self, reference):
        value = reference.strip().lower()
        if value.startswith("0x"):
            value = value[2:]
        if not _TX_HASH_RE.match(value):
            raise ValueError("transaction reference must be 64 hex characters")
        return value


@pytest.fixture
def chain_clients():
    return {
        Network.TRON: FakeChainClient(Network.TRON, [Asset.USDT_TRC20]),
        Network.BSC: FakeChainClient(Network.BSC, [Asset.BNB_BSC]),
        Network.ETHEREUM: FakeChainClient(Network.ETHEREUM, [Asset.ETH]),
    }


RATES_BODY = {
    "tether": {"usd": 1.0},
    "binancecoin": {"usd": 600.5},
    "ethereum": {"usd": 2500},
}


@pytest.fixture
def rate_provider():
    """Rate provider answering from a fixed price table"""
    return ExchangeRateProvider(
        "https://rates.test/api/v3/simple/price",
        fiat_currency="usd",
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json=RATES_BODY)),
    )


@pytest.fixture
def settlement_engine(test_db_session, chain_clients, rate_provider, test_settings):
    return SettlementEngine(test_db_session, chain_clients, rate_provider, test_settings)


def get_test_db():
    """
    Override function for get_db dependency

    Yields test database session instead of production database
    """
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def test_client(chain_clients, rate_provider, test_settings):
    """
    FastAPI test client with database, settings and chain access overridden

    Uses TestClient which is synchronous (perfect for testing)
    """
    from luna_deposits.api.deps import get_app_settings, get_chain_clients, get_rate_provider
    from luna_deposits.db.session import get_db
    from luna_deposits.main import app

    app.dependency_overrides[get_db] = get_test_db
    app.dependency_overrides[get_app_settings] = lambda: test_settings
    app.dependency_overrides[get_chain_clients] = lambda: chain_clients
    app.dependency_overrides[get_rate_provider] = lambda: rate_provider

    # Disable rate limiting for tests
    app.state.limiter.enabled = False

    with TestClient(app) as client:
        yield client

    app.dependency_overrides.clear()

    db = TestingSessionLocal()
    try:
        _clean_tables(db)
    finally:
        db.close()
