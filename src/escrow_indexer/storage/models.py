"""SQLAlchemy models for persistent storage.

This module defines the database schema for the materialized escrow state:
chain provenance (blocks, transactions, participants, actions), deposits and
their balance deltas, verifier/currency tracks and conversion-rate versions,
intents, the payment verifier registry, statistic buckets, and the
applied-event and anomaly ledgers.
"""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# uint256 upper bound has 78 decimal digits.
Uint256 = Numeric(78, 0)

HEX_ID = 66  # 0x + 32 bytes
LOG_ID = 42  # 0x + 20 bytes
ORDER_ID = 44  # 0x + 21 bytes
RATE_VERSION_ID = 74  # 0x + 36 bytes
ADDRESS = 42


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class BlockModel(Base):
    """Chain block metadata (write-once)."""

    __tablename__ = "blocks"

    block_id: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    number: Mapped[int] = mapped_column(BigInteger, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hash: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)


class TransactionModel(Base):
    """Chain transaction metadata (write-once)."""

    __tablename__ = "transactions"

    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)
    block_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    hash: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    from_address: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    to_address: Mapped[str | None] = mapped_column(String(ADDRESS), nullable=True)

    __table_args__ = (Index("idx_transactions_block", "block_id"),)


class ParticipantModel(Base):
    """Address deduplicated per chain."""

    __tablename__ = "participants"

    participant_id: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    address: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)


class ActionModel(Base):
    """Causal link: who did what, to which deposit, in which transaction."""

    __tablename__ = "actions"

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), primary_key=True)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_actions_deposit", "chain_id", "deposit_id"),
        Index("idx_actions_participant", "participant_id"),
        Index("idx_actions_log", "log_id"),
    )


class DepositModel(Base):
    """Funded escrow position; the central mutable entity."""

    __tablename__ = "deposits"

    chain_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    deposit_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), nullable=False)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    depositor: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    token: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)

    deposited: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    remaining: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    max_amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # active|underfunded|closed|withdrawn

    # Ordered track ids opened against this deposit.
    verifier_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    currency_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("idx_deposits_participant", "participant_id"),
        Index("idx_deposits_status", "status"),
    )


class DepositDeltaModel(Base):
    """Balance movement applied to a deposit by one event."""

    __tablename__ = "deposit_deltas"

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), primary_key=True)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_before: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    delta: Mapped[Decimal] = mapped_column(Numeric(79, 0), nullable=False)
    amount_after: Mapped[Decimal] = mapped_column(Numeric(79, 0), nullable=False)

    __table_args__ = (Index("idx_deposit_deltas_deposit", "chain_id", "deposit_id"),)


class DepositReceivedModel(Base):
    __tablename__ = "deposit_received"

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), primary_key=True)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    token: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    min_amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    max_amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)


class DepositWithdrawnModel(Base):
    __tablename__ = "deposit_withdrawn"

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), primary_key=True)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)  # sent to owner


class DepositClosedModel(Base):
    __tablename__ = "deposit_closed"

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), primary_key=True)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)


class DepositVerifierModel(Base):
    """A (deposit, verifier) pairing being opened."""

    __tablename__ = "deposit_verifiers"

    deposit_verifier_id: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(ORDER_ID), nullable=False)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verifier: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    payee_details_hash: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    intent_gating_service: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)

    __table_args__ = (Index("idx_deposit_verifiers_deposit", "chain_id", "deposit_id"),)


class DepositCurrencyModel(Base):
    """A (deposit, verifier, currency) track being opened."""

    __tablename__ = "deposit_currencies"

    deposit_currency_id: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)
    deposit_verifier_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    order_id: Mapped[str] = mapped_column(String(ORDER_ID), nullable=False)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verifier: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    currency: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    # Pointer to the active conversion-rate version of this track.
    current_rate_version_id: Mapped[str] = mapped_column(String(RATE_VERSION_ID), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)

    __table_args__ = (
        Index("idx_deposit_currencies_deposit", "chain_id", "deposit_id"),
        Index("idx_deposit_currencies_verifier", "deposit_verifier_id"),
    )


class ConversionRateVersionModel(Base):
    """One immutable value in a currency track's rate history."""

    __tablename__ = "conversion_rate_versions"

    rate_version_id: Mapped[str] = mapped_column(String(RATE_VERSION_ID), primary_key=True)
    deposit_currency_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    deposit_verifier_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    order_id: Mapped[str] = mapped_column(String(ORDER_ID), nullable=False)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verifier: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    currency: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    change_id: Mapped[int] = mapped_column(Integer, nullable=False)
    value: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False)

    __table_args__ = (
        Index("idx_rate_versions_track", "deposit_currency_id", "change_id", unique=True),
        Index("idx_rate_versions_order", "deposit_currency_id", "order_id"),
    )


class PayeeDetailsModel(Base):
    """Off-chain payee configuration keyed by its on-chain hash."""

    __tablename__ = "payee_details"

    payee_details_hash: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)
    intent_gating_service: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    payee_details: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[str] = mapped_column(Text, nullable=False)  # 0x hex


class IntentModel(Base):
    """A claim against a deposit; frozen to the rate version active at signal time."""

    __tablename__ = "intents"

    chain_id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    intent_hash: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), nullable=False)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verifier: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    currency: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    owner: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    to_address: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    deposit_verifier_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    deposit_currency_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    rate_version_id: Mapped[str] = mapped_column(String(RATE_VERSION_ID), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # signaled|fulfilled|pruned
    signaled_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)

    __table_args__ = (Index("idx_intents_deposit", "chain_id", "deposit_id"),)


class IntentPrunedModel(Base):
    __tablename__ = "intents_pruned"

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), primary_key=True)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    intent_hash: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)


class IntentFulfilledModel(Base):
    __tablename__ = "intents_fulfilled"

    order_id: Mapped[str] = mapped_column(String(ORDER_ID), primary_key=True)
    log_id: Mapped[str] = mapped_column(String(LOG_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    intent_hash: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    deposit_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verifier: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    currency: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    owner: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    to_address: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    sustainability_fee: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    verifier_fee: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    deposit_verifier_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    deposit_currency_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    rate_version_id: Mapped[str] = mapped_column(String(RATE_VERSION_ID), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    participant_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)


class PaymentVerifierModel(Base):
    """Protocol-level payment verifier registry entry (updateable)."""

    __tablename__ = "payment_verifiers"

    payment_verifier_id: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verifier: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    fee_share: Mapped[Decimal] = mapped_column(Uint256, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False)


class PaymentVerifierUpdateModel(Base):
    """History of payment verifier registry events."""

    __tablename__ = "payment_verifier_updates"

    log_id: Mapped[str] = mapped_column(String(LOG_ID), primary_key=True)
    payment_verifier_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)
    chain_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    verifier: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    event_type: Mapped[str] = mapped_column(String(20), nullable=False)  # added|fee_updated|removed
    fee_share: Mapped[Decimal | None] = mapped_column(Uint256, nullable=True)
    transaction_id: Mapped[str] = mapped_column(String(HEX_ID), nullable=False)

    __table_args__ = (Index("idx_payment_verifier_updates_verifier", "payment_verifier_id"),)


class StatModel(Base):
    """Additive counter for one (bucket, width, action, token, currency, verifier)."""

    __tablename__ = "stats"

    stat_id: Mapped[str] = mapped_column(String(HEX_ID), primary_key=True)
    bucket_start: Mapped[int] = mapped_column(BigInteger, nullable=False)
    width: Mapped[str] = mapped_column(String(8), nullable=False)  # hour|day|month
    action: Mapped[str] = mapped_column(String(16), nullable=False)  # deposit|withdrawal|exchange
    token: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    currency: Mapped[str | None] = mapped_column(String(HEX_ID), nullable=True)
    verifier: Mapped[str] = mapped_column(String(ADDRESS), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(79, 0), nullable=False)

    __table_args__ = (Index("idx_stats_width_start", "width", "bucket_start"),)


class AppliedEventModel(Base):
    """Idempotency ledger: one row per event whose effects were applied."""

    __tablename__ = "applied_events"

    event_id: Mapped[str] = mapped_column(String(ORDER_ID), primary_key=True)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )


class AnomalyModel(Base):
    """Recorded invariant breach kept for offline reconciliation."""

    __tablename__ = "anomalies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(ORDER_ID), nullable=False)
    kind: Mapped[str] = mapped_column(String(40), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(RATE_VERSION_ID), nullable=False)
    observed: Mapped[Decimal] = mapped_column(Numeric(79, 0), nullable=False)
    context_json: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    __table_args__ = (Index("idx_anomalies_kind", "kind"),)
