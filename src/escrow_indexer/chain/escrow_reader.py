"""Escrow contract reader for auxiliary verifier metadata.

A DepositVerifierAdded log only carries the hash of the payee details; the
plain text sits in escrow storage behind ``depositVerifierData``. Reads are
throttled by a token bucket, retried with doubling delays on the primary
endpoint, then tried on the fallback endpoint. Results are cached in Redis
because a payee details hash never changes its preimage.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass
from typing import Any

from redis.asyncio import Redis
from web3 import AsyncWeb3
from web3.contract import AsyncContract
from web3.exceptions import Web3Exception
from web3.providers import AsyncHTTPProvider

from escrow_indexer.errors import IndexerError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 24 * 3600
DEFAULT_MAX_REQUESTS_PER_SECOND = 50
DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
PRIMARY_RECHECK_SECONDS = 60.0

# Public getter of the escrow's (depositId, verifier) -> DepositVerifierData mapping.
ESCROW_ABI: list[dict[str, Any]] = [
    {
        "name": "depositVerifierData",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "depositId", "type": "uint256"},
            {"name": "verifier", "type": "address"},
        ],
        "outputs": [
            {"name": "intentGatingService", "type": "address"},
            {"name": "payeeDetails", "type": "string"},
            {"name": "data", "type": "bytes"},
        ],
    }
]


class EscrowReaderError(IndexerError):
    """Base exception for escrow reader errors."""


class RPCError(EscrowReaderError):
    """Every endpoint failed to answer a contract read."""


@dataclass
class RateLimiter:
    """Token bucket shared by all contract reads of one reader."""

    max_tokens: float
    refill_rate: float
    tokens: float
    last_refill: float

    @classmethod
    def create(cls, max_requests_per_second: float) -> "RateLimiter":
        rate = float(max_requests_per_second)
        return cls(max_tokens=rate, refill_rate=rate, tokens=rate, last_refill=time.monotonic())

    async def acquire(self, tokens: float = 1.0) -> None:
        """Take ``tokens`` from the bucket, sleeping until enough have refilled."""
        while True:
            current = time.monotonic()
            self.tokens = min(
                self.max_tokens,
                self.tokens + (current - self.last_refill) * self.refill_rate,
            )
            self.last_refill = current
            shortfall = tokens - self.tokens
            if shortfall <= 0:
                self.tokens -= tokens
                return
            await asyncio.sleep(shortfall / self.refill_rate)


@dataclass(frozen=True)
class PayeeDetails:
    """Off-chain payee configuration of a (deposit, verifier) pairing."""

    intent_gating_service: str
    payee_details: str
    data: str  # 0x hex

    @classmethod
    def from_call(cls, result: Any) -> "PayeeDetails":
        gating_service, payee_details, data = result
        return cls(
            intent_gating_service=str(gating_service).lower(),
            payee_details=str(payee_details),
            data="0x" + bytes(data).hex(),
        )


class EscrowContractReader:
    """Reads deposit verifier data from the escrow contract.

    Example:
        ```python
        reader = EscrowContractReader(
            rpc_url="https://mainnet.base.org",
            escrow_address="0xca38607d85e8f6294dc10728669605e6664c2d70",
            redis=Redis.from_url("redis://localhost:6379"),
        )
        details = await reader.get_payee_details(42, "0x...")
        await reader.aclose()
        ```
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        escrow_address: str,
        fallback_rpc_url: str | None = None,
        redis: Redis | None = None,
        cache_ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        max_requests_per_second: float = DEFAULT_MAX_REQUESTS_PER_SECOND,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    ) -> None:
        """Initialize the reader.

        Args:
            rpc_url: Primary JSON-RPC endpoint.
            escrow_address: Escrow contract address.
            fallback_rpc_url: Endpoint used once the primary keeps failing.
            redis: Client for the payee details cache; no caching when omitted.
            cache_ttl_seconds: Expiry of cached payee details.
            max_requests_per_second: Token bucket size and refill rate.
            max_retries: Attempts per endpoint before giving up on it.
            retry_delay_seconds: Delay after the first failed attempt; doubles each retry.
        """
        self._escrow_address = AsyncWeb3.to_checksum_address(escrow_address)
        self._redis = redis
        self._cache_ttl = cache_ttl_seconds
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._rate_limiter = RateLimiter.create(max_requests_per_second)

        self._w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._w3_fallback: AsyncWeb3[AsyncHTTPProvider] | None = (
            AsyncWeb3(AsyncHTTPProvider(fallback_rpc_url)) if fallback_rpc_url else None
        )

        # Primary is skipped after a failure until PRIMARY_RECHECK_SECONDS pass.
        self._primary_healthy = True
        self._primary_failed_at = 0.0

    def _contract(self, w3: AsyncWeb3[AsyncHTTPProvider]) -> AsyncContract:
        return w3.eth.contract(address=self._escrow_address, abi=ESCROW_ABI)

    def _cache_key(self, deposit_id: int, verifier: str) -> str:
        return f"escrow:payee:{self._escrow_address.lower()}:{deposit_id}:{verifier.lower()}"

    async def _read_cache(self, key: str) -> PayeeDetails | None:
        if self._redis is None:
            return None
        try:
            raw = await self._redis.get(key)
        except Exception as e:
            logger.warning("Payee cache read failed for %s: %s", key, e)
            return None
        if raw is None:
            return None
        try:
            if isinstance(raw, bytes):
                raw = raw.decode()
            return PayeeDetails(**json.loads(raw))
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring malformed payee cache entry %s: %s", key, e)
            return None

    async def _write_cache(self, key: str, details: PayeeDetails) -> None:
        if self._redis is None:
            return
        try:
            await self._redis.set(key, json.dumps(asdict(details)), ex=self._cache_ttl)
        except Exception as e:
            logger.warning("Payee cache write failed for %s: %s", key, e)

    def _primary_available(self) -> bool:
        if self._primary_healthy:
            return True
        current = time.monotonic()
        if current - self._primary_failed_at > PRIMARY_RECHECK_SECONDS:
            self._primary_failed_at = current
            return True
        return False

    async def _attempt(
        self,
        endpoint: str,
        call: Callable[[], Awaitable[Any]],
    ) -> tuple[bool, Any, Exception | None]:
        """Run ``call`` up to ``max_retries`` times on one endpoint."""
        wait = self._retry_delay
        error: Exception | None = None
        for number in range(1, self._max_retries + 1):
            try:
                return True, await call(), None
            except Web3Exception as e:
                error = e
                logger.warning(
                    "depositVerifierData on %s endpoint failed (%d/%d): %s",
                    endpoint,
                    number,
                    self._max_retries,
                    e,
                )
            if number < self._max_retries:
                await asyncio.sleep(wait)
                wait *= 2
        return False, None, error

    async def _read_verifier_data(self, deposit_id: int, verifier: str) -> Any:
        """Call ``depositVerifierData`` on the primary, then on the fallback.

        Raises:
            RPCError: If neither endpoint answers.
        """
        await self._rate_limiter.acquire()
        checksum = AsyncWeb3.to_checksum_address(verifier)

        def read(w3: AsyncWeb3[AsyncHTTPProvider]) -> Callable[[], Awaitable[Any]]:
            return lambda: self._contract(w3).functions.depositVerifierData(deposit_id, checksum).call()

        error: Exception | None = None
        if self._primary_available():
            ok, result, error = await self._attempt("primary", read(self._w3))
            self._primary_healthy = ok
            if ok:
                return result
            self._primary_failed_at = time.monotonic()

        if self._w3_fallback is not None:
            ok, result, fallback_error = await self._attempt("fallback", read(self._w3_fallback))
            if ok:
                logger.info("Fallback endpoint answered depositVerifierData(%d)", deposit_id)
                return result
            error = fallback_error

        raise RPCError(f"depositVerifierData({deposit_id}, {verifier}) failed on every endpoint: {error}")

    async def get_payee_details(self, deposit_id: int, verifier: str) -> PayeeDetails:
        """Read the payee details of a (deposit, verifier) pairing.

        Args:
            deposit_id: Escrow deposit id.
            verifier: Payment verifier address.

        Returns:
            The verifier data stored by the escrow contract.

        Raises:
            RPCError: If the contract call fails on every endpoint.
        """
        key = self._cache_key(deposit_id, verifier)
        details = await self._read_cache(key)
        if details is None:
            details = PayeeDetails.from_call(await self._read_verifier_data(deposit_id, verifier))
            await self._write_cache(key, details)
        return details

    async def aclose(self) -> None:
        """Disconnect the HTTP providers' sessions."""
        endpoints = [self._w3] if self._w3_fallback is None else [self._w3, self._w3_fallback]
        for w3 in endpoints:
            disconnect = getattr(w3.provider, "disconnect", None)
            if disconnect is None:
                continue
            try:
                pending = disconnect()
                if asyncio.iscoroutine(pending):
                    await pending
            except Exception as e:
                logger.debug("Provider disconnect failed: %s", e)
