"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrow_indexer import ids
from escrow_indexer.events import (
    BlockInfo,
    DepositClosed,
    DepositConversionRateUpdated,
    DepositCurrencyAdded,
    DepositReceived,
    DepositVerifierAdded,
    DepositWithdrawn,
    IntentFulfilled,
    IntentPruned,
    IntentSignaled,
    LogContext,
    PaymentVerifierAdded,
    PaymentVerifierFeeShareUpdated,
    PaymentVerifierRemoved,
    TransactionInfo,
)
from escrow_indexer.storage.models import Base

CHAIN_ID = 8453
BASE_TIMESTAMP = 1_700_000_000


class EventFactory:
    """Builds events with unique, increasing provenance.

    Each event gets the next log index unless one is given, so order ids never
    collide between events built by the same factory.
    """

    USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
    DEPOSITOR = "0x" + "11" * 20
    VERIFIER = "0x" + "22" * 20
    TAKER = "0x" + "33" * 20
    GATING = "0x" + "44" * 20
    USD = "0x" + ids.keccak(b"USD").hex()
    EUR = "0x" + ids.keccak(b"EUR").hex()

    def __init__(self, chain_id: int = CHAIN_ID) -> None:
        self.chain_id = chain_id
        self._log_index = 0

    def ctx(
        self,
        *,
        timestamp: int = BASE_TIMESTAMP,
        block_number: int = 100,
        tx_index: int = 0,
        log_index: int | None = None,
        sender: str | None = None,
    ) -> LogContext:
        if log_index is None:
            log_index = self._log_index
            self._log_index += 1
        return LogContext(
            chain_id=self.chain_id,
            block=BlockInfo(
                number=block_number,
                timestamp=timestamp,
                hash="0x" + f"{block_number:064x}",
            ),
            transaction=TransactionInfo(
                hash="0x" + f"{block_number:032x}{tx_index:032x}",
                index=tx_index,
                from_address=sender or self.DEPOSITOR,
                to_address="0xca38607d85e8f6294dc10728669605e6664c2d70",
            ),
            log_index=log_index,
        )

    @staticmethod
    def intent_hash(n: int) -> str:
        return "0x" + f"{n:064x}"

    def deposit_received(
        self,
        deposit_id: int = 1,
        *,
        amount: int = 1_000_000_000,
        min_amount: int = 1_000_000,
        max_amount: int = 500_000_000,
        **ctx: Any,
    ) -> DepositReceived:
        return DepositReceived(
            context=self.ctx(**ctx),
            deposit_id=deposit_id,
            depositor=self.DEPOSITOR,
            token=self.USDC,
            amount=amount,
            min_amount=min_amount,
            max_amount=max_amount,
        )

    def verifier_added(
        self, deposit_id: int = 1, *, verifier: str | None = None, **ctx: Any
    ) -> DepositVerifierAdded:
        return DepositVerifierAdded(
            context=self.ctx(**ctx),
            deposit_id=deposit_id,
            verifier=verifier or self.VERIFIER,
            payee_details_hash="0x" + "ab" * 32,
            intent_gating_service=self.GATING,
        )

    def currency_added(
        self,
        deposit_id: int = 1,
        *,
        rate: int = 1_000_000_000_000_000_000,
        currency: str | None = None,
        verifier: str | None = None,
        **ctx: Any,
    ) -> DepositCurrencyAdded:
        return DepositCurrencyAdded(
            context=self.ctx(**ctx),
            deposit_id=deposit_id,
            verifier=verifier or self.VERIFIER,
            currency=currency or self.USD,
            conversion_rate=rate,
        )

    def rate_updated(
        self,
        deposit_id: int = 1,
        *,
        rate: int,
        currency: str | None = None,
        verifier: str | None = None,
        **ctx: Any,
    ) -> DepositConversionRateUpdated:
        return DepositConversionRateUpdated(
            context=self.ctx(**ctx),
            deposit_id=deposit_id,
            verifier=verifier or self.VERIFIER,
            currency=currency or self.USD,
            new_conversion_rate=rate,
        )

    def intent_signaled(
        self,
        deposit_id: int = 1,
        *,
        intent: int = 1,
        amount: int = 100_000_000,
        currency: str | None = None,
        **ctx: Any,
    ) -> IntentSignaled:
        ctx.setdefault("sender", self.TAKER)
        return IntentSignaled(
            context=self.ctx(**ctx),
            deposit_id=deposit_id,
            intent_hash=self.intent_hash(intent),
            verifier=self.VERIFIER,
            owner=self.TAKER,
            to=self.TAKER,
            amount=amount,
            fiat_currency=currency or self.USD,
        )

    def intent_fulfilled(
        self,
        deposit_id: int = 1,
        *,
        intent: int = 1,
        amount: int = 100_000_000,
        **ctx: Any,
    ) -> IntentFulfilled:
        ctx.setdefault("sender", self.TAKER)
        return IntentFulfilled(
            context=self.ctx(**ctx),
            deposit_id=deposit_id,
            intent_hash=self.intent_hash(intent),
            verifier=self.VERIFIER,
            owner=self.TAKER,
            to=self.TAKER,
            amount=amount,
            sustainability_fee=0,
            verifier_fee=0,
        )

    def intent_pruned(self, deposit_id: int = 1, *, intent: int = 1, **ctx: Any) -> IntentPruned:
        return IntentPruned(
            context=self.ctx(**ctx),
            deposit_id=deposit_id,
            intent_hash=self.intent_hash(intent),
        )

    def withdrawn(self, deposit_id: int = 1, *, amount: int, **ctx: Any) -> DepositWithdrawn:
        return DepositWithdrawn(
            context=self.ctx(**ctx),
            deposit_id=deposit_id,
            depositor=self.DEPOSITOR,
            amount=amount,
        )

    def closed(self, deposit_id: int = 1, **ctx: Any) -> DepositClosed:
        return DepositClosed(context=self.ctx(**ctx), deposit_id=deposit_id, depositor=self.DEPOSITOR)

    def payment_verifier_added(self, *, fee_share: int = 0, **ctx: Any) -> PaymentVerifierAdded:
        return PaymentVerifierAdded(context=self.ctx(**ctx), verifier=self.VERIFIER, fee_share=fee_share)

    def payment_verifier_fee_updated(
        self, *, fee_share: int, **ctx: Any
    ) -> PaymentVerifierFeeShareUpdated:
        return PaymentVerifierFeeShareUpdated(
            context=self.ctx(**ctx), verifier=self.VERIFIER, fee_share=fee_share
        )

    def payment_verifier_removed(self, **ctx: Any) -> PaymentVerifierRemoved:
        return PaymentVerifierRemoved(context=self.ctx(**ctx), verifier=self.VERIFIER)


@pytest.fixture
def events() -> EventFactory:
    """Event factory for the default chain."""
    return EventFactory()


@pytest.fixture
async def async_engine():
    """Create an async SQLite engine for testing."""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session
