"""Deposit lifecycle state machine.

Status is derived, never set directly: every write to ``remaining`` is
followed by ``next_status`` applied to the post-mutation snapshot, and both
are written in the same row update.

    active -> underfunded -> closed
    active | underfunded -> withdrawn
    closed is not left by a later withdrawal

A withdrawal that leaves a balance behind is evaluated like any other
liquidity change; only a withdrawal that drains the deposit moves it to
``withdrawn``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from escrow_indexer.errors import IndexerError
from escrow_indexer.storage.models import DepositDeltaModel, DepositModel
from escrow_indexer.storage.repos import DepositDTO, LedgerStore, to_numeric

if TYPE_CHECKING:
    from escrow_indexer.events import DepositReceived, LogContext

logger = logging.getLogger(__name__)


class DepositStatus(str, Enum):
    ACTIVE = "active"
    UNDERFUNDED = "underfunded"
    CLOSED = "closed"
    WITHDRAWN = "withdrawn"


class DepositAction(str, Enum):
    """Actions that mutate a deposit."""

    DEPOSIT = "deposit"
    EXCHANGE = "exchange"
    CLOSED = "closed"
    WITHDRAWAL = "withdrawal"


class UnknownActionError(IndexerError, ValueError):
    """Raised when the lifecycle machine receives an action it does not define."""


@dataclass(frozen=True)
class DepositSnapshot:
    remaining: int
    min_amount: int
    status: DepositStatus


def next_status(
    action: DepositAction,
    snapshot: DepositSnapshot,
    *,
    one_token_unit: int,
) -> DepositStatus:
    """Status after ``action``, given the post-mutation snapshot.

    Raises:
        UnknownActionError: If ``action`` is not a ``DepositAction``.
    """
    if not isinstance(action, DepositAction):
        raise UnknownActionError(f"Unknown deposit action: {action!r}")
    if action is DepositAction.DEPOSIT or action is DepositAction.EXCHANGE:
        if snapshot.status is not DepositStatus.ACTIVE:
            return snapshot.status
        underfunded = snapshot.remaining < one_token_unit or snapshot.remaining < snapshot.min_amount
        return DepositStatus.UNDERFUNDED if underfunded else DepositStatus.ACTIVE
    if action is DepositAction.CLOSED:
        if snapshot.status in (DepositStatus.ACTIVE, DepositStatus.UNDERFUNDED):
            return DepositStatus.CLOSED
        return snapshot.status
    if action is DepositAction.WITHDRAWAL:
        if snapshot.status is DepositStatus.CLOSED:
            return snapshot.status
        return DepositStatus.WITHDRAWN
    raise UnknownActionError(f"Unknown deposit action: {action!r}")


class DepositLifecycle:
    """Opens deposits and applies balance/status mutations through the store."""

    def __init__(self, store: LedgerStore, *, one_token_unit: int) -> None:
        self._store = store
        self._one_token_unit = one_token_unit

    async def open(self, event: DepositReceived, *, participant_id: str) -> bool:
        """Create the deposit row for a deposit-received event.

        Returns:
            False if the deposit already existed (replay); the row is kept as is.
        """
        ctx = event.context
        status = next_status(
            DepositAction.DEPOSIT,
            DepositSnapshot(
                remaining=event.amount,
                min_amount=event.min_amount,
                status=DepositStatus.ACTIVE,
            ),
            one_token_unit=self._one_token_unit,
        )
        created = await self._store.insert_if_absent(
            DepositModel,
            {
                "chain_id": ctx.chain_id,
                "deposit_id": event.deposit_id,
                "order_id": event.order_id,
                "log_id": ctx.log_id,
                "transaction_id": ctx.transaction_id,
                "participant_id": participant_id,
                "depositor": event.depositor,
                "token": event.token,
                "deposited": to_numeric(event.amount),
                "remaining": to_numeric(event.amount),
                "min_amount": to_numeric(event.min_amount),
                "max_amount": to_numeric(event.max_amount),
                "status": status.value,
                "verifier_ids": [],
                "currency_ids": [],
            },
        )
        if not created:
            logger.info("Deposit %d already materialized; keeping existing row", event.deposit_id)
            return False
        await self._record_delta(
            ctx,
            order_id=event.order_id,
            deposit_id=event.deposit_id,
            action=DepositAction.DEPOSIT,
            before=0,
            delta=event.amount,
        )
        return True

    async def apply(
        self,
        ctx: LogContext,
        *,
        order_id: str,
        deposit_id: int,
        action: DepositAction,
        delta: int = 0,
    ) -> DepositDTO:
        """Apply a balance change and the resulting status in one row update.

        Args:
            ctx: Provenance of the triggering event.
            order_id: Ordered id of the triggering event.
            deposit_id: Target deposit.
            action: Lifecycle action of the triggering event.
            delta: Signed change to ``remaining`` (0 for closure).

        Returns:
            The deposit after the update.

        Raises:
            IntegrityViolationError: If the deposit does not exist.
        """
        deposit = await self._store.require_deposit(ctx.chain_id, deposit_id, for_update=True)
        if delta and await self._store.find_by_key(DepositDeltaModel, order_id) is not None:
            logger.info("Delta %s already applied to deposit %d; skipping", order_id, deposit_id)
            return deposit

        remaining = deposit.remaining + delta
        rule = action
        if action is DepositAction.WITHDRAWAL and remaining > 0:
            # A partial withdrawal only drains liquidity.
            rule = DepositAction.EXCHANGE
        status = next_status(
            rule,
            DepositSnapshot(
                remaining=remaining,
                min_amount=deposit.min_amount,
                status=DepositStatus(deposit.status),
            ),
            one_token_unit=self._one_token_unit,
        )
        await self._store.update(
            DepositModel,
            (ctx.chain_id, deposit_id),
            lambda _row: {"remaining": to_numeric(remaining), "status": status.value},
        )
        if status.value != deposit.status:
            logger.debug(
                "Deposit %d status %s -> %s (%s)", deposit_id, deposit.status, status.value, action.value
            )

        if remaining < 0 or remaining > deposit.deposited:
            await self._store.record_anomaly(
                event_id=order_id,
                kind="deposit_remaining_out_of_range",
                subject_id=str(deposit_id),
                observed=remaining,
                context={
                    "chain_id": ctx.chain_id,
                    "action": action.value,
                    "remaining_before": deposit.remaining,
                    "delta": delta,
                    "deposited": deposit.deposited,
                },
            )

        if delta:
            await self._record_delta(
                ctx,
                order_id=order_id,
                deposit_id=deposit_id,
                action=action,
                before=deposit.remaining,
                delta=delta,
            )

        deposit.remaining = remaining
        deposit.status = status.value
        return deposit

    async def attach_track(
        self,
        chain_id: int,
        deposit_id: int,
        *,
        verifier_id: str | None = None,
        currency_id: str | None = None,
    ) -> None:
        """Append newly opened verifier/currency track ids to the deposit."""

        def _append(row: DepositModel) -> dict[str, list[str]]:
            changes: dict[str, list[str]] = {}
            if verifier_id is not None and verifier_id not in row.verifier_ids:
                changes["verifier_ids"] = [*row.verifier_ids, verifier_id]
            if currency_id is not None and currency_id not in row.currency_ids:
                changes["currency_ids"] = [*row.currency_ids, currency_id]
            return changes

        await self._store.update(DepositModel, (chain_id, deposit_id), _append)

    async def _record_delta(
        self,
        ctx: LogContext,
        *,
        order_id: str,
        deposit_id: int,
        action: DepositAction,
        before: int,
        delta: int,
    ) -> None:
        await self._store.insert_if_absent(
            DepositDeltaModel,
            {
                "order_id": order_id,
                "log_id": ctx.log_id,
                "chain_id": ctx.chain_id,
                "deposit_id": deposit_id,
                "action": action.value,
                "amount_before": to_numeric(before),
                "delta": to_numeric(delta),
                "amount_after": to_numeric(before + delta),
            },
        )
