"""Event dispatcher.

Applies one decoded escrow event to the materialized state. Every event
first writes its provenance (block, transaction, sender) and then runs the
handler for its type. The handler set is closed: ``dispatch`` matches the
event type exhaustively, so adding an event type without a handler fails
type checking.

The dispatcher runs inside the caller's session; committing or rolling back
the event as a whole is the caller's job (see ``Indexer.process``).
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, assert_never

from escrow_indexer import ids
from escrow_indexer.chain.escrow_reader import EscrowReaderError
from escrow_indexer.errors import IntegrityViolationError
from escrow_indexer.events import (
    DepositClosed,
    DepositConversionRateUpdated,
    DepositCurrencyAdded,
    DepositEvent,
    DepositReceived,
    DepositVerifierAdded,
    DepositWithdrawn,
    IntentFulfilled,
    IntentPruned,
    IntentSignaled,
    LogContext,
    PaymentVerifierAdded,
    PaymentVerifierEvent,
    PaymentVerifierFeeShareUpdated,
    PaymentVerifierRemoved,
    ProtocolEvent,
)
from escrow_indexer.ledger.lifecycle import DepositAction, DepositLifecycle
from escrow_indexer.ledger.rates import RateTrackManager
from escrow_indexer.ledger.stats import StatAction, StatisticsAggregator
from escrow_indexer.storage.models import (
    ActionModel,
    BlockModel,
    DepositClosedModel,
    DepositReceivedModel,
    DepositWithdrawnModel,
    IntentFulfilledModel,
    IntentModel,
    IntentPrunedModel,
    ParticipantModel,
    PayeeDetailsModel,
    PaymentVerifierModel,
    PaymentVerifierUpdateModel,
    TransactionModel,
)
from escrow_indexer.storage.repos import IntentDTO, LedgerStore, to_numeric

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from escrow_indexer.chain.escrow_reader import EscrowContractReader

logger = logging.getLogger(__name__)


class IntentStatus(str, Enum):
    SIGNALED = "signaled"
    FULFILLED = "fulfilled"
    PRUNED = "pruned"


def event_id(event: ProtocolEvent) -> str:
    """Idempotency key of an event.

    Deposit-bound events use their ordered id; verifier registry events,
    which have no kind priority, use the log id.
    """
    if isinstance(event, DepositEvent):
        return event.order_id
    return event.event_id


class EventDispatcher:
    """Applies decoded events through the ledger components.

    Args:
        session: Session whose transaction scopes the event.
        one_token_unit: Minimum viable intent size for the lifecycle rule.
        deduplicate: Skip events already recorded in the applied-event ledger.
        payee_reader: Optional reader used to fetch payee details not yet stored.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        one_token_unit: int,
        deduplicate: bool = True,
        payee_reader: EscrowContractReader | None = None,
    ) -> None:
        self.store = LedgerStore(session)
        self.lifecycle = DepositLifecycle(self.store, one_token_unit=one_token_unit)
        self.rates = RateTrackManager(self.store)
        self.stats = StatisticsAggregator(self.store)
        self._deduplicate = deduplicate
        self._payee_reader = payee_reader

    async def dispatch(self, event: ProtocolEvent) -> bool:
        """Apply an event.

        Returns:
            False if the event was skipped as already applied.

        Raises:
            IntegrityViolationError: If the event references an absent entity.
        """
        key = event_id(event)
        if self._deduplicate and not await self.store.mark_applied(key, type(event).__name__):
            logger.info("Event %s (%s) already applied; skipping", key, type(event).__name__)
            return False

        try:
            await self._record_provenance(event.context)
            if isinstance(event, DepositEvent):
                await self._record_action(event)

            if isinstance(event, DepositReceived):
                await self._on_deposit_received(event)
            elif isinstance(event, DepositVerifierAdded):
                await self._on_verifier_added(event)
            elif isinstance(event, DepositCurrencyAdded):
                await self._on_currency_added(event)
            elif isinstance(event, DepositConversionRateUpdated):
                await self._on_rate_updated(event)
            elif isinstance(event, IntentSignaled):
                await self._on_intent_signaled(event)
            elif isinstance(event, IntentFulfilled):
                await self._on_intent_fulfilled(event)
            elif isinstance(event, IntentPruned):
                await self._on_intent_pruned(event)
            elif isinstance(event, DepositWithdrawn):
                await self._on_deposit_withdrawn(event)
            elif isinstance(event, DepositClosed):
                await self._on_deposit_closed(event)
            elif isinstance(event, PaymentVerifierAdded):
                await self._on_payment_verifier_added(event)
            elif isinstance(event, PaymentVerifierFeeShareUpdated):
                await self._on_payment_verifier_fee_updated(event)
            elif isinstance(event, PaymentVerifierRemoved):
                await self._on_payment_verifier_removed(event)
            else:
                assert_never(event)
        except IntegrityViolationError as e:
            logger.error(
                "Integrity violation applying %s (event=%s, block=%d, tx=%s): %s",
                type(event).__name__,
                key,
                event.context.block.number,
                event.context.transaction.hash,
                e,
            )
            raise
        return True

    # ------------------------------------------------------------------
    # Provenance
    # ------------------------------------------------------------------

    async def _record_provenance(self, ctx: LogContext) -> None:
        await self.store.insert_if_absent(
            BlockModel,
            {
                "block_id": ctx.block_id,
                "chain_id": ctx.chain_id,
                "number": ctx.block.number,
                "timestamp": ctx.block.timestamp,
                "hash": ctx.block.hash,
            },
        )
        await self.store.insert_if_absent(
            TransactionModel,
            {
                "transaction_id": ctx.transaction_id,
                "block_id": ctx.block_id,
                "chain_id": ctx.chain_id,
                "hash": ctx.transaction.hash,
                "index": ctx.transaction.index,
                "from_address": ctx.transaction.from_address,
                "to_address": ctx.transaction.to_address,
            },
        )
        await self._participant(ctx.chain_id, ctx.transaction.from_address)

    async def _participant(self, chain_id: int, address: str) -> str:
        participant = ids.participant_id(chain_id, address)
        await self.store.insert_if_absent(
            ParticipantModel,
            {"participant_id": participant, "chain_id": chain_id, "address": address},
        )
        return participant

    async def _record_action(self, event: DepositEvent) -> None:
        ctx = event.context
        await self.store.insert_if_absent(
            ActionModel,
            {
                "order_id": event.order_id,
                "log_id": ctx.log_id,
                "kind": event.KIND.name.lower(),
                "participant_id": ctx.sender_id,
                "transaction_id": ctx.transaction_id,
                "chain_id": ctx.chain_id,
                "deposit_id": event.deposit_id,
            },
        )

    def _event_row(self, event: DepositEvent, participant_id: str) -> dict[str, object]:
        ctx = event.context
        return {
            "order_id": event.order_id,
            "log_id": ctx.log_id,
            "chain_id": ctx.chain_id,
            "deposit_id": event.deposit_id,
            "transaction_id": ctx.transaction_id,
            "participant_id": participant_id,
        }

    # ------------------------------------------------------------------
    # Deposit events
    # ------------------------------------------------------------------

    async def _on_deposit_received(self, event: DepositReceived) -> None:
        depositor = await self._participant(event.context.chain_id, event.depositor)
        await self.lifecycle.open(event, participant_id=depositor)
        await self.store.insert_if_absent(
            DepositReceivedModel,
            {
                **self._event_row(event, depositor),
                "token": event.token,
                "amount": to_numeric(event.amount),
                "min_amount": to_numeric(event.min_amount),
                "max_amount": to_numeric(event.max_amount),
            },
        )
        await self.stats.record(
            event.context,
            order_id=event.order_id,
            action=StatAction.DEPOSIT,
            token=event.token,
            amount=event.amount,
        )

    async def _on_verifier_added(self, event: DepositVerifierAdded) -> None:
        ctx = event.context
        await self.store.require_deposit(ctx.chain_id, event.deposit_id)
        track = await self.rates.add_verifier(event, participant_id=ctx.sender_id)
        await self.lifecycle.attach_track(ctx.chain_id, event.deposit_id, verifier_id=track)
        await self._store_payee_details(event)

    async def _store_payee_details(self, event: DepositVerifierAdded) -> None:
        if self._payee_reader is None:
            return
        if await self.store.find_by_key(PayeeDetailsModel, event.payee_details_hash) is not None:
            return
        try:
            details = await self._payee_reader.get_payee_details(event.deposit_id, event.verifier)
        except EscrowReaderError as e:
            logger.warning(
                "Payee details %s unavailable for deposit %d: %s",
                event.payee_details_hash,
                event.deposit_id,
                e,
            )
            return
        await self.store.insert_if_absent(
            PayeeDetailsModel,
            {
                "payee_details_hash": event.payee_details_hash,
                "intent_gating_service": details.intent_gating_service,
                "payee_details": details.payee_details,
                "data": details.data,
            },
        )

    async def _on_currency_added(self, event: DepositCurrencyAdded) -> None:
        ctx = event.context
        await self.store.require_deposit(ctx.chain_id, event.deposit_id)
        track = await self.rates.open_track(event, participant_id=ctx.sender_id)
        await self.lifecycle.attach_track(
            ctx.chain_id, event.deposit_id, currency_id=track.deposit_currency_id
        )

    async def _on_rate_updated(self, event: DepositConversionRateUpdated) -> None:
        await self.rates.update_rate(event)

    async def _on_deposit_withdrawn(self, event: DepositWithdrawn) -> None:
        ctx = event.context
        depositor = await self._participant(ctx.chain_id, event.depositor)
        deposit = await self.lifecycle.apply(
            ctx,
            order_id=event.order_id,
            deposit_id=event.deposit_id,
            action=DepositAction.WITHDRAWAL,
            delta=-event.amount,
        )
        await self.store.insert_if_absent(
            DepositWithdrawnModel,
            {**self._event_row(event, depositor), "amount": to_numeric(event.amount)},
        )
        await self.stats.record(
            ctx,
            order_id=event.order_id,
            action=StatAction.WITHDRAWAL,
            token=deposit.token,
            amount=event.amount,
        )

    async def _on_deposit_closed(self, event: DepositClosed) -> None:
        ctx = event.context
        depositor = await self._participant(ctx.chain_id, event.depositor)
        await self.lifecycle.apply(
            ctx,
            order_id=event.order_id,
            deposit_id=event.deposit_id,
            action=DepositAction.CLOSED,
        )
        await self.store.insert_if_absent(DepositClosedModel, self._event_row(event, depositor))

    # ------------------------------------------------------------------
    # Intent events
    # ------------------------------------------------------------------

    async def _require_intent(self, chain_id: int, intent_hash: str) -> IntentDTO:
        intent = await self.store.get_intent(chain_id, intent_hash)
        if intent is None:
            raise IntegrityViolationError(f"Intent {intent_hash} on chain {chain_id} never signaled")
        return intent

    async def _on_intent_signaled(self, event: IntentSignaled) -> None:
        ctx = event.context
        await self.store.require_deposit(ctx.chain_id, event.deposit_id)
        owner = await self._participant(ctx.chain_id, event.owner)
        frozen = await self.rates.freeze(
            ctx.chain_id,
            event.deposit_id,
            verifier=event.verifier,
            currency=event.fiat_currency,
        )
        await self.store.insert_if_absent(
            IntentModel,
            {
                "chain_id": ctx.chain_id,
                "intent_hash": event.intent_hash,
                "order_id": event.order_id,
                "log_id": ctx.log_id,
                "deposit_id": event.deposit_id,
                "verifier": event.verifier,
                "currency": event.fiat_currency,
                "owner": event.owner,
                "to_address": event.to,
                "amount": to_numeric(event.amount),
                "deposit_verifier_id": frozen.deposit_verifier_id,
                "deposit_currency_id": frozen.deposit_currency_id,
                "rate_version_id": frozen.rate_version_id,
                "status": IntentStatus.SIGNALED.value,
                "signaled_at": ctx.timestamp,
                "transaction_id": ctx.transaction_id,
                "participant_id": owner,
            },
        )

    async def _check_fulfillment(self, event: IntentFulfilled, intent: IntentDTO) -> None:
        """Record anomalies for a fulfillment that disagrees with its intent.

        The balance change is still applied: the chain already moved the funds.
        """
        if await self.store.find_by_key(IntentFulfilledModel, event.order_id) is not None:
            return
        ctx = event.context
        if intent.deposit_id != event.deposit_id:
            await self.store.record_anomaly(
                event_id=event.order_id,
                kind="intent_deposit_mismatch",
                subject_id=event.intent_hash,
                observed=event.deposit_id,
                context={"chain_id": ctx.chain_id, "intent_deposit_id": intent.deposit_id},
            )
        if intent.status != IntentStatus.SIGNALED:
            await self.store.record_anomaly(
                event_id=event.order_id,
                kind="intent_not_signaled",
                subject_id=event.intent_hash,
                observed=event.amount,
                context={"chain_id": ctx.chain_id, "status": intent.status},
            )

    async def _on_intent_fulfilled(self, event: IntentFulfilled) -> None:
        ctx = event.context
        intent = await self._require_intent(ctx.chain_id, event.intent_hash)
        await self._check_fulfillment(event, intent)
        deposit = await self.lifecycle.apply(
            ctx,
            order_id=event.order_id,
            deposit_id=event.deposit_id,
            action=DepositAction.EXCHANGE,
            delta=-event.amount,
        )
        await self.store.update(
            IntentModel,
            (ctx.chain_id, event.intent_hash),
            lambda _row: {"status": IntentStatus.FULFILLED.value},
        )
        owner = await self._participant(ctx.chain_id, event.owner)
        await self.store.insert_if_absent(
            IntentFulfilledModel,
            {
                **self._event_row(event, owner),
                "intent_hash": event.intent_hash,
                "verifier": event.verifier,
                "currency": intent.currency,
                "owner": event.owner,
                "to_address": event.to,
                "amount": to_numeric(event.amount),
                "sustainability_fee": to_numeric(event.sustainability_fee),
                "verifier_fee": to_numeric(event.verifier_fee),
                "deposit_verifier_id": intent.deposit_verifier_id,
                "deposit_currency_id": intent.deposit_currency_id,
                "rate_version_id": intent.rate_version_id,
            },
        )
        await self.stats.record(
            ctx,
            order_id=event.order_id,
            action=StatAction.EXCHANGE,
            token=deposit.token,
            currency=intent.currency,
            verifier=event.verifier,
            amount=event.amount,
        )

    async def _on_intent_pruned(self, event: IntentPruned) -> None:
        ctx = event.context
        intent = await self._require_intent(ctx.chain_id, event.intent_hash)
        if intent.status == IntentStatus.SIGNALED:
            await self.store.update(
                IntentModel,
                (ctx.chain_id, event.intent_hash),
                lambda _row: {"status": IntentStatus.PRUNED.value},
            )
        else:
            logger.info("Intent %s already %s; prune recorded only", event.intent_hash, intent.status)
        await self.store.insert_if_absent(
            IntentPrunedModel,
            {**self._event_row(event, ctx.sender_id), "intent_hash": event.intent_hash},
        )

    # ------------------------------------------------------------------
    # Payment verifier registry
    # ------------------------------------------------------------------

    async def _record_verifier_update(
        self, event: PaymentVerifierEvent, event_type: str, fee_share: int | None
    ) -> str:
        ctx = event.context
        verifier_id = ids.participant_id(ctx.chain_id, event.verifier)
        await self.store.insert_if_absent(
            PaymentVerifierUpdateModel,
            {
                "log_id": ctx.log_id,
                "payment_verifier_id": verifier_id,
                "chain_id": ctx.chain_id,
                "verifier": event.verifier,
                "event_type": event_type,
                "fee_share": to_numeric(fee_share) if fee_share is not None else None,
                "transaction_id": ctx.transaction_id,
            },
        )
        return verifier_id

    async def _on_payment_verifier_added(self, event: PaymentVerifierAdded) -> None:
        verifier_id = await self._record_verifier_update(event, "added", event.fee_share)
        # A verifier removed earlier can be whitelisted again.
        await self.store.upsert_with_merge(
            PaymentVerifierModel,
            {
                "payment_verifier_id": verifier_id,
                "chain_id": event.context.chain_id,
                "verifier": event.verifier,
                "fee_share": to_numeric(event.fee_share),
                "active": True,
            },
            merge=lambda excluded: {"fee_share": excluded.fee_share, "active": True},
        )

    async def _on_payment_verifier_fee_updated(self, event: PaymentVerifierFeeShareUpdated) -> None:
        verifier_id = await self._record_verifier_update(event, "fee_updated", event.fee_share)
        await self.store.update(
            PaymentVerifierModel,
            verifier_id,
            lambda _row: {"fee_share": to_numeric(event.fee_share)},
        )

    async def _on_payment_verifier_removed(self, event: PaymentVerifierRemoved) -> None:
        verifier_id = await self._record_verifier_update(event, "removed", None)
        await self.store.update(PaymentVerifierModel, verifier_id, lambda _row: {"active": False})
