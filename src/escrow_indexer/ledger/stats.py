"""Time-bucketed statistics aggregator.

Every qualifying event adds its amount to one counter per bucket width. The
buckets do not nest in storage: hour, day and month each get their own row,
written with an additive upsert. Additive merges are not idempotent, so
replays must be filtered before reaching this module.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

from escrow_indexer import ids
from escrow_indexer.ids import BucketWidth
from escrow_indexer.storage.models import StatModel
from escrow_indexer.storage.repos import LedgerStore, StatDTO, to_numeric

if TYPE_CHECKING:
    from escrow_indexer.events import LogContext

logger = logging.getLogger(__name__)

# Verifier column value for actions not tied to a verifier.
NO_VERIFIER = "0x" + "00" * 20


class StatAction(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    EXCHANGE = "exchange"


class StatisticsAggregator:
    """Maintains hour/day/month counters per (action, token, currency, verifier)."""

    WIDTHS: tuple[BucketWidth, ...] = (BucketWidth.HOUR, BucketWidth.DAY, BucketWidth.MONTH)

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def record(
        self,
        ctx: LogContext,
        *,
        order_id: str,
        action: StatAction,
        token: str,
        amount: int,
        currency: str | None = None,
        verifier: str = NO_VERIFIER,
    ) -> list[StatDTO]:
        """Add ``amount`` to the three buckets containing the event's timestamp.

        Withdrawals are recorded as the amount leaving the deposit; the action
        carries the sign.

        Returns:
            The counters after the merge, one per width.
        """
        buckets = []
        for width in self.WIDTHS:
            row = await self._store.upsert_with_merge(
                StatModel,
                {
                    "stat_id": ids.stat_id(
                        timestamp=ctx.timestamp,
                        width=width,
                        action=action.value,
                        token=token,
                        currency=currency,
                        verifier=verifier,
                    ),
                    "bucket_start": ids.bucket_start(ctx.timestamp, width),
                    "width": width.tag,
                    "action": action.value,
                    "token": token,
                    "currency": currency,
                    "verifier": verifier,
                    "amount": to_numeric(amount),
                },
                merge=lambda excluded: {"amount": StatModel.amount + excluded.amount},
            )
            stat = StatDTO.from_model(row)
            if stat.amount < 0:
                await self._store.record_anomaly(
                    event_id=order_id,
                    kind="negative_stat_counter",
                    subject_id=stat.stat_id,
                    observed=stat.amount,
                    context={
                        "width": stat.width,
                        "bucket_start": stat.bucket_start,
                        "action": stat.action,
                        "token": token,
                        "currency": currency,
                        "verifier": verifier,
                        "amount": amount,
                    },
                )
            buckets.append(stat)

        logger.debug(
            "Recorded %s %d for token %s at %d", action.value, amount, token, ctx.timestamp
        )
        return buckets
