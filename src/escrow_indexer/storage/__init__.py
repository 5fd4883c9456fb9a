"""Storage layer - Database schemas and the ledger store adapter."""

from escrow_indexer.storage.database import (
    DatabaseManager,
    create_async_db_engine,
)
from escrow_indexer.storage.models import Base
from escrow_indexer.storage.repos import (
    AnomalyDTO,
    CurrencyTrackDTO,
    DepositDTO,
    IntentDTO,
    LedgerStore,
    PaymentVerifierDTO,
    RateVersionDTO,
    StatDTO,
    VerifierTrackDTO,
)

__all__ = [
    "AnomalyDTO",
    "Base",
    "CurrencyTrackDTO",
    "DatabaseManager",
    "DepositDTO",
    "IntentDTO",
    "LedgerStore",
    "PaymentVerifierDTO",
    "RateVersionDTO",
    "StatDTO",
    "VerifierTrackDTO",
    "create_async_db_engine",
]
