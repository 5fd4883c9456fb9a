"""Store adapter and data transfer objects.

``LedgerStore`` is the sole mutator of materialized state. It exposes four
primitives over the SQLAlchemy models, all keyed by the deterministic ids from
``escrow_indexer.ids``:

- ``insert_if_absent``: first write wins (replays are not errors)
- ``find_by_key``: point lookup, optionally row-locked for a read-then-write
- ``update``: locked read, mutator, write; a missing row is an integrity violation
- ``upsert_with_merge``: insert, or merge into the existing row on conflict

plus typed getters that return DTOs.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING, Any, TypeVar

import sqlalchemy as sa
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from escrow_indexer.errors import IntegrityViolationError
from escrow_indexer.storage.models import (
    AnomalyModel,
    AppliedEventModel,
    Base,
    ConversionRateVersionModel,
    DepositCurrencyModel,
    DepositModel,
    DepositVerifierModel,
    IntentModel,
    PaymentVerifierModel,
    StatModel,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


def to_numeric(value: int) -> Decimal:
    return Decimal(value)


@dataclass
class DepositDTO:
    """Data transfer object for deposits."""

    chain_id: int
    deposit_id: int
    depositor: str
    token: str
    deposited: int
    remaining: int
    min_amount: int
    max_amount: int
    status: str
    verifier_ids: list[str] = field(default_factory=list)
    currency_ids: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: DepositModel) -> DepositDTO:
        return cls(
            chain_id=model.chain_id,
            deposit_id=model.deposit_id,
            depositor=model.depositor,
            token=model.token,
            deposited=int(model.deposited),
            remaining=int(model.remaining),
            min_amount=int(model.min_amount),
            max_amount=int(model.max_amount),
            status=model.status,
            verifier_ids=list(model.verifier_ids or []),
            currency_ids=list(model.currency_ids or []),
            created_at=model.created_at,
            updated_at=model.updated_at,
        )


@dataclass
class VerifierTrackDTO:
    """Data transfer object for a (deposit, verifier) pairing."""

    deposit_verifier_id: str
    chain_id: int
    deposit_id: int
    verifier: str
    payee_details_hash: str
    intent_gating_service: str

    @classmethod
    def from_model(cls, model: DepositVerifierModel) -> VerifierTrackDTO:
        return cls(
            deposit_verifier_id=model.deposit_verifier_id,
            chain_id=model.chain_id,
            deposit_id=model.deposit_id,
            verifier=model.verifier,
            payee_details_hash=model.payee_details_hash,
            intent_gating_service=model.intent_gating_service,
        )


@dataclass
class CurrencyTrackDTO:
    """Data transfer object for a (deposit, verifier, currency) track."""

    deposit_currency_id: str
    deposit_verifier_id: str
    chain_id: int
    deposit_id: int
    verifier: str
    currency: str
    current_rate_version_id: str

    @classmethod
    def from_model(cls, model: DepositCurrencyModel) -> CurrencyTrackDTO:
        return cls(
            deposit_currency_id=model.deposit_currency_id,
            deposit_verifier_id=model.deposit_verifier_id,
            chain_id=model.chain_id,
            deposit_id=model.deposit_id,
            verifier=model.verifier,
            currency=model.currency,
            current_rate_version_id=model.current_rate_version_id,
        )


@dataclass
class RateVersionDTO:
    """Data transfer object for conversion-rate versions."""

    rate_version_id: str
    deposit_currency_id: str
    change_id: int
    value: int
    active: bool
    order_id: str

    @classmethod
    def from_model(cls, model: ConversionRateVersionModel) -> RateVersionDTO:
        return cls(
            rate_version_id=model.rate_version_id,
            deposit_currency_id=model.deposit_currency_id,
            change_id=model.change_id,
            value=int(model.value),
            active=bool(model.active),
            order_id=model.order_id,
        )


@dataclass
class IntentDTO:
    """Data transfer object for intents."""

    chain_id: int
    intent_hash: str
    deposit_id: int
    verifier: str
    currency: str
    owner: str
    to_address: str
    amount: int
    deposit_verifier_id: str
    deposit_currency_id: str
    rate_version_id: str
    status: str

    @classmethod
    def from_model(cls, model: IntentModel) -> IntentDTO:
        return cls(
            chain_id=model.chain_id,
            intent_hash=model.intent_hash,
            deposit_id=model.deposit_id,
            verifier=model.verifier,
            currency=model.currency,
            owner=model.owner,
            to_address=model.to_address,
            amount=int(model.amount),
            deposit_verifier_id=model.deposit_verifier_id,
            deposit_currency_id=model.deposit_currency_id,
            rate_version_id=model.rate_version_id,
            status=model.status,
        )


@dataclass
class StatDTO:
    """Data transfer object for statistic buckets."""

    stat_id: str
    bucket_start: int
    width: str
    action: str
    token: str
    currency: str | None
    verifier: str
    amount: int

    @classmethod
    def from_model(cls, model: StatModel) -> StatDTO:
        return cls(
            stat_id=model.stat_id,
            bucket_start=model.bucket_start,
            width=model.width,
            action=model.action,
            token=model.token,
            currency=model.currency,
            verifier=model.verifier,
            amount=int(model.amount),
        )


@dataclass
class PaymentVerifierDTO:
    payment_verifier_id: str
    chain_id: int
    verifier: str
    fee_share: int
    active: bool

    @classmethod
    def from_model(cls, model: PaymentVerifierModel) -> PaymentVerifierDTO:
        return cls(
            payment_verifier_id=model.payment_verifier_id,
            chain_id=model.chain_id,
            verifier=model.verifier,
            fee_share=int(model.fee_share),
            active=bool(model.active),
        )


@dataclass
class AnomalyDTO:
    """Data transfer object for recorded invariant breaches."""

    event_id: str
    kind: str
    subject_id: str
    observed: int
    context: dict[str, Any]
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: AnomalyModel) -> AnomalyDTO:
        return cls(
            event_id=model.event_id,
            kind=model.kind,
            subject_id=model.subject_id,
            observed=int(model.observed),
            context=dict(model.context_json or {}),
            created_at=model.created_at,
        )


class LedgerStore:
    """Store adapter over an async session.

    All statements run inside the caller's session, so everything written
    while applying one event commits or rolls back together.
    """

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.anomalies_recorded = 0

    def _insert(self, model: type[Base]) -> Any:
        if self.session.get_bind().dialect.name == "postgresql":
            return pg_insert(model)
        return sqlite_insert(model)

    @staticmethod
    def _key_columns(model: type[Base]) -> list[str]:
        return [column.name for column in sa.inspect(model).primary_key]

    async def insert_if_absent(self, model: type[Base], values: Mapping[str, Any]) -> bool:
        """Insert a row unless its key already exists.

        Returns:
            True if the row was inserted, False if an existing row was kept.
        """
        stmt = self._insert(model).values(**values).on_conflict_do_nothing()
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def find_by_key(
        self,
        model: type[ModelT],
        key: Any,
        *,
        for_update: bool = False,
    ) -> ModelT | None:
        """Point lookup by primary key (a tuple for composite keys).

        ``for_update`` takes a row lock so concurrent writers to the same key
        are serialized (a no-op on SQLite, which serializes writers anyway).
        """
        return await self.session.get(
            model,
            key,
            populate_existing=True,
            with_for_update=True if for_update else None,
        )

    async def update(
        self,
        model: type[ModelT],
        key: Any,
        mutator: Callable[[ModelT], Mapping[str, Any]],
    ) -> ModelT:
        """Apply ``mutator``'s changes to the locked row at ``key``.

        Raises:
            IntegrityViolationError: If no row exists at ``key``.
        """
        row = await self.find_by_key(model, key, for_update=True)
        if row is None:
            raise IntegrityViolationError(f"{model.__tablename__} {key!r} not found")
        for name, value in mutator(row).items():
            setattr(row, name, value)
        await self.session.flush()
        return row

    async def upsert_with_merge(
        self,
        model: type[ModelT],
        values: Mapping[str, Any],
        *,
        merge: Callable[[Any], Mapping[str, Any]],
    ) -> ModelT:
        """Insert ``values``, or merge into the existing row on key conflict.

        Args:
            model: Target model.
            values: Initial row.
            merge: Called with the ``excluded`` pseudo-row; returns the SET clause.

        Returns:
            The row as stored after the statement.
        """
        stmt = self._insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=self._key_columns(model),
            set_=dict(merge(stmt.excluded)),
        ).returning(model)
        result = await self.session.scalars(stmt, execution_options={"populate_existing": True})
        return result.one()

    # ------------------------------------------------------------------
    # Typed getters
    # ------------------------------------------------------------------

    async def get_deposit(
        self, chain_id: int, deposit_id: int, *, for_update: bool = False
    ) -> DepositDTO | None:
        model = await self.find_by_key(DepositModel, (chain_id, deposit_id), for_update=for_update)
        return DepositDTO.from_model(model) if model else None

    async def require_deposit(
        self, chain_id: int, deposit_id: int, *, for_update: bool = False
    ) -> DepositDTO:
        deposit = await self.get_deposit(chain_id, deposit_id, for_update=for_update)
        if deposit is None:
            raise IntegrityViolationError(f"Deposit {deposit_id} on chain {chain_id} not found")
        return deposit

    async def get_verifier_track(self, deposit_verifier_id: str) -> VerifierTrackDTO | None:
        model = await self.find_by_key(DepositVerifierModel, deposit_verifier_id)
        return VerifierTrackDTO.from_model(model) if model else None

    async def get_currency_track(self, deposit_currency_id: str) -> CurrencyTrackDTO | None:
        model = await self.find_by_key(DepositCurrencyModel, deposit_currency_id)
        return CurrencyTrackDTO.from_model(model) if model else None

    async def get_rate_version(self, rate_version_id: str) -> RateVersionDTO | None:
        model = await self.find_by_key(ConversionRateVersionModel, rate_version_id)
        return RateVersionDTO.from_model(model) if model else None

    async def find_rate_version_by_order(
        self, deposit_currency_id: str, order_id: str
    ) -> RateVersionDTO | None:
        """The version of a track written by the event with ``order_id``, if any."""
        model = await self.session.scalar(
            select(ConversionRateVersionModel).where(
                ConversionRateVersionModel.deposit_currency_id == deposit_currency_id,
                ConversionRateVersionModel.order_id == order_id,
            )
        )
        return RateVersionDTO.from_model(model) if model else None

    async def list_rate_versions(self, deposit_currency_id: str) -> list[RateVersionDTO]:
        """All versions of a track, oldest first, grouped by the version id prefix."""
        result = await self.session.execute(
            select(ConversionRateVersionModel)
            .where(ConversionRateVersionModel.rate_version_id.startswith(deposit_currency_id))
            .order_by(ConversionRateVersionModel.change_id)
            .execution_options(populate_existing=True)
        )
        return [RateVersionDTO.from_model(m) for m in result.scalars().all()]

    async def get_intent(self, chain_id: int, intent_hash: str) -> IntentDTO | None:
        model = await self.find_by_key(IntentModel, (chain_id, intent_hash))
        return IntentDTO.from_model(model) if model else None

    async def get_stat(self, stat_id: str) -> StatDTO | None:
        model = await self.find_by_key(StatModel, stat_id)
        return StatDTO.from_model(model) if model else None

    async def get_payment_verifier(self, payment_verifier_id: str) -> PaymentVerifierDTO | None:
        model = await self.find_by_key(PaymentVerifierModel, payment_verifier_id)
        return PaymentVerifierDTO.from_model(model) if model else None

    # ------------------------------------------------------------------
    # Ledgers
    # ------------------------------------------------------------------

    async def mark_applied(self, event_id: str, kind: str) -> bool:
        """Claim an event in the idempotency ledger.

        Returns:
            False if the event was already applied.
        """
        return await self.insert_if_absent(
            AppliedEventModel, {"event_id": event_id, "kind": kind}
        )

    async def record_anomaly(
        self,
        *,
        event_id: str,
        kind: str,
        subject_id: str,
        observed: int,
        context: Mapping[str, Any],
    ) -> None:
        self.anomalies_recorded += 1
        logger.warning(
            "Anomaly %s on %s (event=%s, observed=%d, context=%s)",
            kind,
            subject_id,
            event_id,
            observed,
            dict(context),
        )
        await self.session.execute(
            sa.insert(AnomalyModel).values(
                event_id=event_id,
                kind=kind,
                subject_id=subject_id,
                observed=to_numeric(observed),
                context_json=dict(context),
            )
        )

    async def list_anomalies(self, *, kind: str | None = None) -> list[AnomalyDTO]:
        stmt = select(AnomalyModel).order_by(AnomalyModel.id)
        if kind is not None:
            stmt = stmt.where(AnomalyModel.kind == kind)
        result = await self.session.execute(stmt)
        return [AnomalyDTO.from_model(m) for m in result.scalars().all()]
