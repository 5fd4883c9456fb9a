"""Ledger components - deposit lifecycle, rate tracks and statistics."""

from escrow_indexer.ledger.lifecycle import (
    DepositAction,
    DepositLifecycle,
    DepositSnapshot,
    DepositStatus,
    UnknownActionError,
    next_status,
)
from escrow_indexer.ledger.rates import FrozenRate, RateTrackManager
from escrow_indexer.ledger.stats import NO_VERIFIER, StatAction, StatisticsAggregator

__all__ = [
    "NO_VERIFIER",
    "DepositAction",
    "DepositLifecycle",
    "DepositSnapshot",
    "DepositStatus",
    "FrozenRate",
    "RateTrackManager",
    "StatAction",
    "StatisticsAggregator",
    "UnknownActionError",
    "next_status",
]
