"""Initial schema for the materialized escrow state.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-18 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

UINT256 = sa.Numeric(78, 0)
INT256 = sa.Numeric(79, 0)


def _provenance_columns() -> list[sa.Column]:
    return [
        sa.Column("order_id", sa.String(44), nullable=False),
        sa.Column("log_id", sa.String(42), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("deposit_id", sa.BigInteger(), nullable=False),
        sa.Column("transaction_id", sa.String(66), nullable=False),
        sa.Column("participant_id", sa.String(66), nullable=False),
    ]


def upgrade() -> None:
    # Chain provenance
    op.create_table(
        "blocks",
        sa.Column("block_id", sa.String(66), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("number", sa.BigInteger(), nullable=False),
        sa.Column("timestamp", sa.BigInteger(), nullable=False),
        sa.Column("hash", sa.String(66), nullable=False),
        sa.PrimaryKeyConstraint("block_id"),
    )
    op.create_table(
        "transactions",
        sa.Column("transaction_id", sa.String(66), nullable=False),
        sa.Column("block_id", sa.String(66), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("hash", sa.String(66), nullable=False),
        sa.Column("index", sa.Integer(), nullable=False),
        sa.Column("from_address", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=True),
        sa.PrimaryKeyConstraint("transaction_id"),
    )
    op.create_index("idx_transactions_block", "transactions", ["block_id"])
    op.create_table(
        "participants",
        sa.Column("participant_id", sa.String(66), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("address", sa.String(42), nullable=False),
        sa.PrimaryKeyConstraint("participant_id"),
    )
    op.create_table(
        "actions",
        sa.Column("order_id", sa.String(44), nullable=False),
        sa.Column("log_id", sa.String(42), nullable=False),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("participant_id", sa.String(66), nullable=False),
        sa.Column("transaction_id", sa.String(66), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("deposit_id", sa.BigInteger(), nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_index("idx_actions_deposit", "actions", ["chain_id", "deposit_id"])
    op.create_index("idx_actions_participant", "actions", ["participant_id"])
    op.create_index("idx_actions_log", "actions", ["log_id"])

    # Deposits
    op.create_table(
        "deposits",
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("deposit_id", sa.BigInteger(), nullable=False),
        sa.Column("order_id", sa.String(44), nullable=False),
        sa.Column("log_id", sa.String(42), nullable=False),
        sa.Column("transaction_id", sa.String(66), nullable=False),
        sa.Column("participant_id", sa.String(66), nullable=False),
        sa.Column("depositor", sa.String(42), nullable=False),
        sa.Column("token", sa.String(42), nullable=False),
        sa.Column("deposited", UINT256, nullable=False),
        sa.Column("remaining", UINT256, nullable=False),
        sa.Column("min_amount", UINT256, nullable=False),
        sa.Column("max_amount", UINT256, nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("verifier_ids", sa.JSON(), nullable=False),
        sa.Column("currency_ids", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("chain_id", "deposit_id"),
    )
    op.create_index("idx_deposits_participant", "deposits", ["participant_id"])
    op.create_index("idx_deposits_status", "deposits", ["status"])

    op.create_table(
        "deposit_deltas",
        sa.Column("order_id", sa.String(44), nullable=False),
        sa.Column("log_id", sa.String(42), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("deposit_id", sa.BigInteger(), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("amount_before", UINT256, nullable=False),
        sa.Column("delta", INT256, nullable=False),
        sa.Column("amount_after", INT256, nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_index("idx_deposit_deltas_deposit", "deposit_deltas", ["chain_id", "deposit_id"])

    op.create_table(
        "deposit_received",
        *_provenance_columns(),
        sa.Column("token", sa.String(42), nullable=False),
        sa.Column("amount", UINT256, nullable=False),
        sa.Column("min_amount", UINT256, nullable=False),
        sa.Column("max_amount", UINT256, nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_table(
        "deposit_withdrawn",
        *_provenance_columns(),
        sa.Column("amount", UINT256, nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_table(
        "deposit_closed",
        *_provenance_columns(),
        sa.PrimaryKeyConstraint("order_id"),
    )

    # Verifier / currency tracks and conversion-rate versions
    op.create_table(
        "deposit_verifiers",
        sa.Column("deposit_verifier_id", sa.String(66), nullable=False),
        *_provenance_columns(),
        sa.Column("verifier", sa.String(42), nullable=False),
        sa.Column("payee_details_hash", sa.String(66), nullable=False),
        sa.Column("intent_gating_service", sa.String(42), nullable=False),
        sa.PrimaryKeyConstraint("deposit_verifier_id"),
    )
    op.create_index(
        "idx_deposit_verifiers_deposit", "deposit_verifiers", ["chain_id", "deposit_id"]
    )
    op.create_table(
        "deposit_currencies",
        sa.Column("deposit_currency_id", sa.String(66), nullable=False),
        sa.Column("deposit_verifier_id", sa.String(66), nullable=False),
        *_provenance_columns(),
        sa.Column("verifier", sa.String(42), nullable=False),
        sa.Column("currency", sa.String(66), nullable=False),
        sa.Column("current_rate_version_id", sa.String(74), nullable=False),
        sa.PrimaryKeyConstraint("deposit_currency_id"),
    )
    op.create_index(
        "idx_deposit_currencies_deposit", "deposit_currencies", ["chain_id", "deposit_id"]
    )
    op.create_index(
        "idx_deposit_currencies_verifier", "deposit_currencies", ["deposit_verifier_id"]
    )
    op.create_table(
        "conversion_rate_versions",
        sa.Column("rate_version_id", sa.String(74), nullable=False),
        sa.Column("deposit_currency_id", sa.String(66), nullable=False),
        sa.Column("deposit_verifier_id", sa.String(66), nullable=False),
        sa.Column("order_id", sa.String(44), nullable=False),
        sa.Column("log_id", sa.String(42), nullable=False),
        sa.Column("transaction_id", sa.String(66), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("deposit_id", sa.BigInteger(), nullable=False),
        sa.Column("verifier", sa.String(42), nullable=False),
        sa.Column("currency", sa.String(66), nullable=False),
        sa.Column("change_id", sa.Integer(), nullable=False),
        sa.Column("value", UINT256, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("rate_version_id"),
    )
    op.create_index(
        "idx_rate_versions_track",
        "conversion_rate_versions",
        ["deposit_currency_id", "change_id"],
        unique=True,
    )
    op.create_index(
        "idx_rate_versions_order",
        "conversion_rate_versions",
        ["deposit_currency_id", "order_id"],
    )
    op.create_table(
        "payee_details",
        sa.Column("payee_details_hash", sa.String(66), nullable=False),
        sa.Column("intent_gating_service", sa.String(42), nullable=False),
        sa.Column("payee_details", sa.Text(), nullable=False),
        sa.Column("data", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("payee_details_hash"),
    )

    # Intents
    op.create_table(
        "intents",
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("intent_hash", sa.String(66), nullable=False),
        sa.Column("order_id", sa.String(44), nullable=False),
        sa.Column("log_id", sa.String(42), nullable=False),
        sa.Column("deposit_id", sa.BigInteger(), nullable=False),
        sa.Column("verifier", sa.String(42), nullable=False),
        sa.Column("currency", sa.String(66), nullable=False),
        sa.Column("owner", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount", UINT256, nullable=False),
        sa.Column("deposit_verifier_id", sa.String(66), nullable=False),
        sa.Column("deposit_currency_id", sa.String(66), nullable=False),
        sa.Column("rate_version_id", sa.String(74), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("signaled_at", sa.BigInteger(), nullable=False),
        sa.Column("transaction_id", sa.String(66), nullable=False),
        sa.Column("participant_id", sa.String(66), nullable=False),
        sa.PrimaryKeyConstraint("chain_id", "intent_hash"),
    )
    op.create_index("idx_intents_deposit", "intents", ["chain_id", "deposit_id"])
    op.create_table(
        "intents_pruned",
        *_provenance_columns(),
        sa.Column("intent_hash", sa.String(66), nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )
    op.create_table(
        "intents_fulfilled",
        *_provenance_columns(),
        sa.Column("intent_hash", sa.String(66), nullable=False),
        sa.Column("verifier", sa.String(42), nullable=False),
        sa.Column("currency", sa.String(66), nullable=False),
        sa.Column("owner", sa.String(42), nullable=False),
        sa.Column("to_address", sa.String(42), nullable=False),
        sa.Column("amount", UINT256, nullable=False),
        sa.Column("sustainability_fee", UINT256, nullable=False),
        sa.Column("verifier_fee", UINT256, nullable=False),
        sa.Column("deposit_verifier_id", sa.String(66), nullable=False),
        sa.Column("deposit_currency_id", sa.String(66), nullable=False),
        sa.Column("rate_version_id", sa.String(74), nullable=False),
        sa.PrimaryKeyConstraint("order_id"),
    )

    # Payment verifier registry
    op.create_table(
        "payment_verifiers",
        sa.Column("payment_verifier_id", sa.String(66), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("verifier", sa.String(42), nullable=False),
        sa.Column("fee_share", UINT256, nullable=False),
        sa.Column("active", sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint("payment_verifier_id"),
    )
    op.create_table(
        "payment_verifier_updates",
        sa.Column("log_id", sa.String(42), nullable=False),
        sa.Column("payment_verifier_id", sa.String(66), nullable=False),
        sa.Column("chain_id", sa.BigInteger(), nullable=False),
        sa.Column("verifier", sa.String(42), nullable=False),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("fee_share", UINT256, nullable=True),
        sa.Column("transaction_id", sa.String(66), nullable=False),
        sa.PrimaryKeyConstraint("log_id"),
    )
    op.create_index(
        "idx_payment_verifier_updates_verifier",
        "payment_verifier_updates",
        ["payment_verifier_id"],
    )

    # Statistics
    op.create_table(
        "stats",
        sa.Column("stat_id", sa.String(66), nullable=False),
        sa.Column("bucket_start", sa.BigInteger(), nullable=False),
        sa.Column("width", sa.String(8), nullable=False),
        sa.Column("action", sa.String(16), nullable=False),
        sa.Column("token", sa.String(42), nullable=False),
        sa.Column("currency", sa.String(66), nullable=True),
        sa.Column("verifier", sa.String(42), nullable=False),
        sa.Column("amount", INT256, nullable=False),
        sa.PrimaryKeyConstraint("stat_id"),
    )
    op.create_index("idx_stats_width_start", "stats", ["width", "bucket_start"])

    # Ledgers
    op.create_table(
        "applied_events",
        sa.Column("event_id", sa.String(44), nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("applied_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("event_id"),
    )
    op.create_table(
        "anomalies",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("event_id", sa.String(44), nullable=False),
        sa.Column("kind", sa.String(40), nullable=False),
        sa.Column("subject_id", sa.String(74), nullable=False),
        sa.Column("observed", INT256, nullable=False),
        sa.Column("context_json", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_anomalies_kind", "anomalies", ["kind"])


def downgrade() -> None:
    op.drop_index("idx_anomalies_kind", table_name="anomalies")
    op.drop_table("anomalies")
    op.drop_table("applied_events")
    op.drop_index("idx_stats_width_start", table_name="stats")
    op.drop_table("stats")
    op.drop_index("idx_payment_verifier_updates_verifier", table_name="payment_verifier_updates")
    op.drop_table("payment_verifier_updates")
    op.drop_table("payment_verifiers")
    op.drop_table("intents_fulfilled")
    op.drop_table("intents_pruned")
    op.drop_index("idx_intents_deposit", table_name="intents")
    op.drop_table("intents")
    op.drop_table("payee_details")
    op.drop_index("idx_rate_versions_order", table_name="conversion_rate_versions")
    op.drop_index("idx_rate_versions_track", table_name="conversion_rate_versions")
    op.drop_table("conversion_rate_versions")
    op.drop_index("idx_deposit_currencies_verifier", table_name="deposit_currencies")
    op.drop_index("idx_deposit_currencies_deposit", table_name="deposit_currencies")
    op.drop_table("deposit_currencies")
    op.drop_index("idx_deposit_verifiers_deposit", table_name="deposit_verifiers")
    op.drop_table("deposit_verifiers")
    op.drop_table("deposit_closed")
    op.drop_table("deposit_withdrawn")
    op.drop_table("deposit_received")
    op.drop_index("idx_deposit_deltas_deposit", table_name="deposit_deltas")
    op.drop_table("deposit_deltas")
    op.drop_index("idx_deposits_status", table_name="deposits")
    op.drop_index("idx_deposits_participant", table_name="deposits")
    op.drop_table("deposits")
    op.drop_index("idx_actions_log", table_name="actions")
    op.drop_index("idx_actions_participant", table_name="actions")
    op.drop_index("idx_actions_deposit", table_name="actions")
    op.drop_table("actions")
    op.drop_table("participants")
    op.drop_index("idx_transactions_block", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("blocks")
