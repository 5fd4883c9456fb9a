"""Tests for the event dispatcher."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrow_indexer import ids
from escrow_indexer.chain.escrow_reader import PayeeDetails, RPCError
from escrow_indexer.dispatcher import EventDispatcher, event_id
from escrow_indexer.errors import IntegrityViolationError
from escrow_indexer.ids import BucketWidth
from escrow_indexer.ledger.stats import NO_VERIFIER
from escrow_indexer.storage.models import (
    ActionModel,
    BlockModel,
    DepositReceivedModel,
    DepositWithdrawnModel,
    IntentFulfilledModel,
    IntentPrunedModel,
    ParticipantModel,
    PayeeDetailsModel,
    PaymentVerifierUpdateModel,
    TransactionModel,
)

CHAIN_ID = 8453
BASE_TIMESTAMP = 1_700_000_000
USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"


async def _count(session: AsyncSession, model) -> int:
    return await session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def dispatcher(async_session: AsyncSession) -> EventDispatcher:
    return EventDispatcher(async_session, one_token_unit=1)


async def _setup_track(dispatcher: EventDispatcher, events, **deposit) -> None:
    await dispatcher.dispatch(events.deposit_received(**deposit))
    await dispatcher.dispatch(events.verifier_added())
    await dispatcher.dispatch(events.currency_added(rate=1_000))


def _stat_id(action: str, *, currency: str | None = None, verifier: str = NO_VERIFIER) -> str:
    return ids.stat_id(
        timestamp=BASE_TIMESTAMP,
        width=BucketWidth.HOUR,
        action=action,
        token=USDC,
        currency=currency,
        verifier=verifier,
    )


class TestProvenance:
    @pytest.mark.asyncio
    async def test_records_block_transaction_and_action(
        self, dispatcher: EventDispatcher, events, async_session: AsyncSession
    ) -> None:
        event = events.deposit_received()
        assert await dispatcher.dispatch(event) is True

        assert await _count(async_session, BlockModel) == 1
        assert await _count(async_session, TransactionModel) == 1
        assert await _count(async_session, ParticipantModel) == 1  # sender is the depositor
        action = await async_session.get(ActionModel, event.order_id)
        assert action is not None
        assert action.kind == "deposit"
        assert action.participant_id == ids.participant_id(CHAIN_ID, events.DEPOSITOR)

    def test_event_id(self, events) -> None:
        deposit = events.deposit_received()
        registry = events.payment_verifier_added()
        assert event_id(deposit) == deposit.order_id
        assert event_id(registry) == registry.context.log_id


class TestDepositLifecycle:
    @pytest.mark.asyncio
    async def test_partial_withdrawal_then_fulfillment(
        self, dispatcher: EventDispatcher, events, async_session: AsyncSession
    ) -> None:
        await _setup_track(dispatcher, events, amount=1000, min_amount=100, max_amount=500)
        await dispatcher.dispatch(events.intent_signaled(amount=50))

        await dispatcher.dispatch(events.withdrawn(amount=950))
        deposit = await dispatcher.store.require_deposit(CHAIN_ID, 1)
        assert (deposit.remaining, deposit.status) == (50, "underfunded")

        await dispatcher.dispatch(events.intent_fulfilled(amount=50))
        deposit = await dispatcher.store.require_deposit(CHAIN_ID, 1)
        assert (deposit.remaining, deposit.status) == (0, "underfunded")

        assert await _count(async_session, DepositWithdrawnModel) == 1
        withdrawal = await dispatcher.store.get_stat(_stat_id("withdrawal"))
        assert withdrawal is not None
        assert withdrawal.amount == 950

    @pytest.mark.asyncio
    async def test_close_then_withdraw_stays_closed(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        await dispatcher.dispatch(events.deposit_received(amount=1000, min_amount=100, max_amount=500))
        await dispatcher.dispatch(events.closed())
        await dispatcher.dispatch(events.withdrawn(amount=1000))

        deposit = await dispatcher.store.require_deposit(CHAIN_ID, 1)
        assert (deposit.remaining, deposit.status) == (0, "closed")

    @pytest.mark.asyncio
    async def test_tracks_attached_to_deposit(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        await _setup_track(dispatcher, events)

        deposit = await dispatcher.store.require_deposit(CHAIN_ID, 1)
        verifier_track = ids.verifier_track_id(CHAIN_ID, events.VERIFIER, 1)
        assert deposit.verifier_ids == [verifier_track]
        assert deposit.currency_ids == [ids.currency_track_id(verifier_track, events.USD)]


class TestIntents:
    @pytest.mark.asyncio
    async def test_fulfillment_uses_rate_frozen_at_signal(
        self, dispatcher: EventDispatcher, events, async_session: AsyncSession
    ) -> None:
        await _setup_track(dispatcher, events)
        await dispatcher.dispatch(events.rate_updated(rate=1_100))
        await dispatcher.dispatch(events.intent_signaled(intent=1))
        await dispatcher.dispatch(events.rate_updated(rate=1_200))
        fulfilled = events.intent_fulfilled(intent=1)
        await dispatcher.dispatch(fulfilled)

        intent = await dispatcher.store.get_intent(CHAIN_ID, events.intent_hash(1))
        assert intent is not None
        assert intent.status == "fulfilled"
        frozen = await dispatcher.store.get_rate_version(intent.rate_version_id)
        assert frozen is not None
        assert (frozen.change_id, frozen.value, frozen.active) == (1, 1_100, False)

        row = await async_session.get(IntentFulfilledModel, fulfilled.order_id)
        assert row is not None
        assert row.rate_version_id == intent.rate_version_id
        assert row.currency == events.USD

    @pytest.mark.asyncio
    async def test_exchange_stat_keyed_by_currency_and_verifier(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        await _setup_track(dispatcher, events)
        await dispatcher.dispatch(events.intent_signaled(intent=1, amount=100))
        await dispatcher.dispatch(events.intent_fulfilled(intent=1, amount=100))
        await dispatcher.dispatch(events.intent_signaled(intent=2, amount=40))
        await dispatcher.dispatch(events.intent_fulfilled(intent=2, amount=40))

        exchange = await dispatcher.store.get_stat(
            _stat_id("exchange", currency=events.USD, verifier=events.VERIFIER)
        )
        assert exchange is not None
        assert exchange.amount == 140
        deposit_stat = await dispatcher.store.get_stat(_stat_id("deposit"))
        assert deposit_stat is not None
        assert deposit_stat.amount == 1_000_000_000

    @pytest.mark.asyncio
    async def test_prune(
        self, dispatcher: EventDispatcher, events, async_session: AsyncSession
    ) -> None:
        await _setup_track(dispatcher, events)
        await dispatcher.dispatch(events.intent_signaled(intent=1))
        await dispatcher.dispatch(events.intent_pruned(intent=1))

        intent = await dispatcher.store.get_intent(CHAIN_ID, events.intent_hash(1))
        assert intent is not None
        assert intent.status == "pruned"
        deposit = await dispatcher.store.require_deposit(CHAIN_ID, 1)
        assert deposit.remaining == 1_000_000_000

    @pytest.mark.asyncio
    async def test_prune_after_fulfillment_is_recorded_only(
        self, dispatcher: EventDispatcher, events, async_session: AsyncSession
    ) -> None:
        await _setup_track(dispatcher, events)
        await dispatcher.dispatch(events.intent_signaled(intent=1))
        await dispatcher.dispatch(events.intent_fulfilled(intent=1))
        await dispatcher.dispatch(events.intent_pruned(intent=1))

        intent = await dispatcher.store.get_intent(CHAIN_ID, events.intent_hash(1))
        assert intent is not None
        assert intent.status == "fulfilled"
        assert await _count(async_session, IntentPrunedModel) == 1

    @pytest.mark.asyncio
    async def test_fulfillment_of_pruned_intent_is_an_anomaly(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        await _setup_track(dispatcher, events)
        await dispatcher.dispatch(events.intent_signaled(intent=1, amount=100))
        await dispatcher.dispatch(events.intent_pruned(intent=1))
        await dispatcher.dispatch(events.intent_fulfilled(intent=1, amount=100))

        anomalies = await dispatcher.store.list_anomalies(kind="intent_not_signaled")
        assert [(a.subject_id, a.observed) for a in anomalies] == [(events.intent_hash(1), 100)]
        assert anomalies[0].context["status"] == "pruned"
        deposit = await dispatcher.store.require_deposit(CHAIN_ID, 1)
        assert deposit.remaining == 1_000_000_000 - 100

    @pytest.mark.asyncio
    async def test_fulfillment_against_other_deposit_is_an_anomaly(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        await _setup_track(dispatcher, events)
        await dispatcher.dispatch(events.deposit_received(2))
        await dispatcher.dispatch(events.intent_signaled(intent=1, amount=100))
        await dispatcher.dispatch(events.intent_fulfilled(2, intent=1, amount=100))

        anomalies = await dispatcher.store.list_anomalies(kind="intent_deposit_mismatch")
        assert [(a.subject_id, a.observed) for a in anomalies] == [(events.intent_hash(1), 2)]
        assert anomalies[0].context["intent_deposit_id"] == 1
        assert await dispatcher.store.list_anomalies(kind="intent_not_signaled") == []


class TestIntegrityViolations:
    @pytest.mark.asyncio
    async def test_rate_update_without_track(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        await dispatcher.dispatch(events.deposit_received())
        with pytest.raises(IntegrityViolationError):
            await dispatcher.dispatch(events.rate_updated(rate=1_100))

    @pytest.mark.asyncio
    async def test_fulfill_without_intent(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        await _setup_track(dispatcher, events)
        with pytest.raises(IntegrityViolationError, match="never signaled"):
            await dispatcher.dispatch(events.intent_fulfilled(intent=9))

    @pytest.mark.asyncio
    async def test_currency_without_verifier(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        await dispatcher.dispatch(events.deposit_received())
        with pytest.raises(IntegrityViolationError, match="never added"):
            await dispatcher.dispatch(events.currency_added())

    @pytest.mark.asyncio
    async def test_verifier_for_unknown_deposit(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        with pytest.raises(IntegrityViolationError, match="Deposit 5"):
            await dispatcher.dispatch(events.verifier_added(deposit_id=5))

    @pytest.mark.asyncio
    async def test_violation_is_logged(
        self, dispatcher: EventDispatcher, events, caplog
    ) -> None:
        with pytest.raises(IntegrityViolationError):
            await dispatcher.dispatch(events.closed(deposit_id=3))
        assert "Integrity violation applying DepositClosed" in caplog.text


class TestReplay:
    @pytest.mark.asyncio
    async def test_duplicate_is_skipped(
        self, dispatcher: EventDispatcher, events, async_session: AsyncSession
    ) -> None:
        event = events.deposit_received()
        assert await dispatcher.dispatch(event) is True
        assert await dispatcher.dispatch(event) is False

        stat = await dispatcher.store.get_stat(_stat_id("deposit"))
        assert stat is not None
        assert stat.amount == event.amount

    @pytest.mark.asyncio
    async def test_without_deduplication_stats_double_count(
        self, async_session: AsyncSession, events
    ) -> None:
        dispatcher = EventDispatcher(async_session, one_token_unit=1, deduplicate=False)
        await _setup_track(dispatcher, events)
        await dispatcher.dispatch(events.intent_signaled(intent=1, amount=100))
        fulfilled = events.intent_fulfilled(intent=1, amount=100)

        assert await dispatcher.dispatch(fulfilled) is True
        assert await dispatcher.dispatch(fulfilled) is True

        deposit = await dispatcher.store.require_deposit(CHAIN_ID, 1)
        assert deposit.remaining == 1_000_000_000 - 100
        assert await _count(async_session, IntentFulfilledModel) == 1
        exchange = await dispatcher.store.get_stat(
            _stat_id("exchange", currency=events.USD, verifier=events.VERIFIER)
        )
        assert exchange is not None
        assert exchange.amount == 200
        assert await dispatcher.store.list_anomalies() == []

    @pytest.mark.asyncio
    async def test_replayed_deposit_keeps_row(
        self, async_session: AsyncSession, events
    ) -> None:
        dispatcher = EventDispatcher(async_session, one_token_unit=1, deduplicate=False)
        event = events.deposit_received(amount=1000)
        await dispatcher.dispatch(event)
        await dispatcher.dispatch(event)

        deposit = await dispatcher.store.require_deposit(CHAIN_ID, 1)
        assert (deposit.deposited, deposit.remaining) == (1000, 1000)
        assert await _count(async_session, DepositReceivedModel) == 1


class TestPaymentVerifierRegistry:
    @pytest.mark.asyncio
    async def test_add_update_remove(
        self, dispatcher: EventDispatcher, events, async_session: AsyncSession
    ) -> None:
        verifier_id = ids.participant_id(CHAIN_ID, events.VERIFIER)

        await dispatcher.dispatch(events.payment_verifier_added(fee_share=10))
        await dispatcher.dispatch(events.payment_verifier_fee_updated(fee_share=25))
        registered = await dispatcher.store.get_payment_verifier(verifier_id)
        assert registered is not None
        assert (registered.fee_share, registered.active) == (25, True)

        await dispatcher.dispatch(events.payment_verifier_removed())
        removed = await dispatcher.store.get_payment_verifier(verifier_id)
        assert removed is not None
        assert removed.active is False

        await dispatcher.dispatch(events.payment_verifier_added(fee_share=5))
        readded = await dispatcher.store.get_payment_verifier(verifier_id)
        assert readded is not None
        assert (readded.fee_share, readded.active) == (5, True)

        result = await async_session.execute(
            select(PaymentVerifierUpdateModel.event_type).order_by(PaymentVerifierUpdateModel.log_id)
        )
        assert list(result.scalars()) == ["added", "fee_updated", "removed", "added"]

    @pytest.mark.asyncio
    async def test_fee_update_for_unknown_verifier(
        self, dispatcher: EventDispatcher, events
    ) -> None:
        with pytest.raises(IntegrityViolationError, match="payment_verifiers"):
            await dispatcher.dispatch(events.payment_verifier_fee_updated(fee_share=1))


class TestPayeeDetails:
    @pytest.fixture
    def reader(self) -> MagicMock:
        reader = MagicMock()
        reader.get_payee_details = AsyncMock(
            return_value=PayeeDetails(
                intent_gating_service="0x" + "44" * 20,
                payee_details="alice@bank",
                data="0x",
            )
        )
        return reader

    @pytest.mark.asyncio
    async def test_fetched_once_per_hash(
        self, async_session: AsyncSession, events, reader: MagicMock
    ) -> None:
        dispatcher = EventDispatcher(async_session, one_token_unit=1, payee_reader=reader)
        await dispatcher.dispatch(events.deposit_received(deposit_id=1))
        await dispatcher.dispatch(events.deposit_received(deposit_id=2))
        await dispatcher.dispatch(events.verifier_added(deposit_id=1))
        await dispatcher.dispatch(events.verifier_added(deposit_id=2))

        row = await async_session.get(PayeeDetailsModel, "0x" + "ab" * 32)
        assert row is not None
        assert row.payee_details == "alice@bank"
        reader.get_payee_details.assert_awaited_once_with(1, events.VERIFIER)

    @pytest.mark.asyncio
    async def test_reader_failure_is_not_fatal(
        self, async_session: AsyncSession, events, reader: MagicMock
    ) -> None:
        reader.get_payee_details.side_effect = RPCError("down")
        dispatcher = EventDispatcher(async_session, one_token_unit=1, payee_reader=reader)
        await dispatcher.dispatch(events.deposit_received())

        assert await dispatcher.dispatch(events.verifier_added()) is True
        assert await _count(async_session, PayeeDetailsModel) == 0
