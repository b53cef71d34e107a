"""
Chain Client Interface

Common contract for per-network adapters plus the shared HTTP plumbing
(timeouts, retries, rate-limit backoff) used by the TRON and EVM clients.
"""

import abc
import asyncio
import enum
import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Any, Optional

import httpx

from .assets import Asset, Network

logger = logging.getLogger(__name__)


class ChainError(Exception):
    """Chain API error"""
    pass


class RetryableChainError(ChainError):
    """Timeout, node unavailable or rate limit; the caller may retry later"""
    pass


class ConfirmationStatus(str, enum.Enum):
    NOT_FOUND = "not_found"  # unknown to the node or not yet included
    UNCONFIRMED = "unconfirmed"  # included, finality not reached yet
    FINALIZED = "finalized"
    FAILED = "failed"  # included but reverted / rejected by the chain


@dataclass(frozen=True)
class Transfer:
    recipient: str
    amount_minor: int


@dataclass
class TransactionConfirmation:
    """
    Result of looking a transaction up on chain

    recipient/amount_minor describe the first movement of the asset;
    transfers lists every movement when a transaction carries several
    (token contracts may emit more than one Transfer event).
    """
    reference: str
    status: ConfirmationStatus
    amount_minor: int = 0
    recipient: Optional[str] = None
    asset: Optional[Asset] = None  # None: does not move a supported asset
    confirmations: int = 0
    reason: Optional[str] = None
    transfers: tuple[Transfer, ...] = ()

    @property
    def finalized(self) -> bool:
        return self.status is ConfirmationStatus.FINALIZED

    @property
    def payments(self) -> tuple[Transfer, ...]:
        """Every transfer, falling back to recipient/amount_minor"""
        if self.transfers:
            return self.transfers
        if self.recipient is None:
            return ()
        return (Transfer(recipient=self.recipient, amount_minor=self.amount_minor),)

    @property
    def is_terminal_failure(self) -> bool:
        return self.status is ConfirmationStatus.FAILED


@dataclass(frozen=True)
class FeeEstimate:
    """Advisory network fee, in minor units of the network's fee coin"""
    amount_minor: int
    fee_symbol: str
    decimals: int
    estimated: bool  # False when the fixed default was used

    @property
    def amount_display(self) -> str:
        with localcontext() as ctx:
            ctx.prec = 100
            return f"{Decimal(self.amount_minor).scaleb(-self.decimals):.{self.decimals}f}"


class ChainClient(abc.ABC):
    """
    Adapter for one blockchain network

    Implementations:
        TronGridClient - TRON, TRC-20 token transfers
        EvmRpcClient - EVM networks, native coin transfers
    """

    network: Network

    @property
    @abc.abstractmethod
    def supported_assets(self) -> tuple[Asset, ...]:
        ...

    @abc.abstractmethod
    async def confirm_transaction(self, reference: str) -> TransactionConfirmation:
        """
        Look a transaction up and report its finality

        Raises:
            RetryableChainError: If the node could not be reached
        """

    @abc.abstractmethod
    async def get_balance(self, address: str, asset: Asset) -> int:
        """On-chain balance of an address in minor units"""

    @abc.abstractmethod
    async def estimate_fee(self) -> FeeEstimate:
        """Best-effort fee for a deposit transfer; never raises"""

    @abc.abstractmethod
    async def submit_transfer(self, signed_transaction: Any) -> str:
        """Relay an already-signed transaction, returning its reference"""

    @abc.abstractmethod
    def build_payment_uri(
        self,
        address: str,
        asset: Asset,
        amount_minor: int,
        memo: Optional[str] = None,
    ) -> str:
        """Scannable URI understood by wallet apps"""

    @abc.abstractmethod
    def normalize_address(self, address: str) -> str:
        ...

    @abc.abstractmethod
    def normalize_reference(self, reference: str) -> str:
        """
        Canonical form of a transaction id

        Raises:
            ValueError: If the reference is malformed for this network
        """

    async def close(self) -> None:
        pass


class HttpChainClient(ChainClient):
    """
    Base for adapters that talk to a node over HTTP

    Handles:
    - Lazy httpx.AsyncClient creation with a bounded timeout
    - Retries on transport errors, 429 and 5xx
    - Conversion of exhausted retries into RetryableChainError
    """

    def __init__(
        self,
        base_url: str,
        headers: Optional[dict[str, str]] = None,
        timeout: float = 10.0,
        retry_attempts: int = 3,
        retry_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client"""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: dict[str, Any]) -> Any:
        """
        POST JSON with retries and rate limit handling

        Returns:
            Decoded JSON body

        Raises:
            RetryableChainError: After all retries are exhausted
        """
        client = await self._get_client()
        last_error: Optional[Exception] = None

        for attempt in range(self.retry_attempts):
            try:
                response = await client.post(path, json=payload)

                if response.status_code == 429:
                    delay = self.retry_delay * (attempt + 1)
                    logger.warning(
                        "%s rate limit hit, retrying in %.1fs (attempt %d/%d)",
                        self.network.value,
                        delay,
                        attempt + 1,
                        self.retry_attempts,
                    )
                    last_error = RetryableChainError(f"{self.network.value} rate limit exceeded")
                    await asyncio.sleep(delay)
                    continue

                response.raise_for_status()
                return response.json()

            except httpx.HTTPStatusError as e:
                last_error = RetryableChainError(
                    f"HTTP error {e.response.status_code} from {self.network.value} node"
                )
                if e.response.status_code >= 500:
                    await asyncio.sleep(self.retry_delay)
                    continue
                raise last_error from e

            except httpx.RequestError as e:
                last_error = RetryableChainError(f"Request error: {e}")
                await asyncio.sleep(self.retry_delay)
                continue

            except ValueError as e:
                raise RetryableChainError(f"Malformed response from {self.network.value} node") from e

        raise last_error or RetryableChainError(f"{self.network.value} node unavailable")
