"""Indexer runner.

This module provides the Indexer class that consumes the decoded event feed,
admits one event at a time, and applies each event in its own transaction.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from redis.asyncio import Redis

from escrow_indexer.chain.escrow_reader import EscrowContractReader
from escrow_indexer.config import Settings, get_settings
from escrow_indexer.dispatcher import EventDispatcher, event_id
from escrow_indexer.errors import IntegrityViolationError
from escrow_indexer.events import ProtocolEvent
from escrow_indexer.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    """Configure root logging from settings."""
    logging.basicConfig(level=settings.get_logging_level(), format=LOG_FORMAT)
    logging.getLogger().setLevel(settings.get_logging_level())


class IndexerState(str, Enum):
    """Indexer lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class IndexerStats:
    """Statistics for the indexer."""

    started_at: datetime | None = None
    events_applied: int = 0
    events_skipped: int = 0
    anomalies: int = 0
    errors: int = 0
    last_event_id: str | None = None
    last_block: int | None = None
    last_error: str | None = None


class Indexer:
    """Applies the escrow event feed to the database.

    Each event runs inside one ``DatabaseManager.get_async_session()`` scope,
    so its effects commit together or not at all. An integrity violation
    moves the indexer to ``ERROR`` and stops the feed: applying later events
    on top of a missing one would diverge from the chain.

    Example:
        ```python
        from escrow_indexer.config import get_settings
        from escrow_indexer.indexer import Indexer

        indexer = Indexer(get_settings())
        stats = await indexer.run(log_source)
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        db_manager: DatabaseManager | None = None,
        payee_reader: EscrowContractReader | None = None,
    ) -> None:
        """Initialize the indexer.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            db_manager: Database manager to use instead of one built from settings.
            payee_reader: Payee details reader to use instead of one built from settings.
        """
        self._settings = settings or get_settings()
        self._state = IndexerState.STOPPED
        self._stats = IndexerStats()

        self._db_manager = db_manager
        self._owns_db_manager = db_manager is None
        self._payee_reader = payee_reader
        self._owns_payee_reader = payee_reader is None
        self._redis: Redis | None = None

        self._stop_event: asyncio.Event | None = None

    @property
    def state(self) -> IndexerState:
        """Current indexer state."""
        return self._state

    @property
    def stats(self) -> IndexerStats:
        """Current indexer statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if indexer is running."""
        return self._state == IndexerState.RUNNING

    async def start(self) -> None:
        """Start the indexer.

        Raises:
            RuntimeError: If the indexer is not stopped.
        """
        if self._state != IndexerState.STOPPED:
            raise RuntimeError(f"Cannot start indexer in state {self._state}")

        self._state = IndexerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting indexer (%s)", self._settings.redacted_summary())

        try:
            await self._initialize_components()
            self._stats.started_at = datetime.now(UTC)
            self._state = IndexerState.RUNNING
            logger.info("Indexer started")
        except Exception as e:
            self._state = IndexerState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start indexer: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the indexer and release resources."""
        if self._state == IndexerState.STOPPED:
            return

        failed = self._state == IndexerState.ERROR
        self._state = IndexerState.STOPPING
        logger.info("Stopping indexer...")

        if self._stop_event:
            self._stop_event.set()

        await self._cleanup()

        self._state = IndexerState.ERROR if failed else IndexerState.STOPPED
        logger.info(
            "Indexer stopped (applied=%d, skipped=%d, anomalies=%d)",
            self._stats.events_applied,
            self._stats.events_skipped,
            self._stats.anomalies,
        )

    def request_stop(self) -> None:
        """Ask ``run`` to stop after the event in flight."""
        if self._stop_event:
            self._stop_event.set()

    async def _initialize_components(self) -> None:
        settings = self._settings

        if self._db_manager is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager.from_settings(settings.database)

        if (
            self._payee_reader is None
            and settings.ledger.fetch_payee_details
            and settings.chain.rpc_url
        ):
            if settings.redis.url:
                logger.debug("Initializing Redis connection...")
                self._redis = Redis.from_url(settings.redis.url)
            logger.debug("Initializing escrow reader...")
            self._payee_reader = EscrowContractReader(
                settings.chain.rpc_url,
                escrow_address=settings.chain.escrow_address,
                fallback_rpc_url=settings.chain.fallback_rpc_url,
                redis=self._redis,
                max_requests_per_second=settings.chain.max_requests_per_second,
            )

    async def _cleanup(self) -> None:
        if self._owns_payee_reader and self._payee_reader is not None:
            await self._payee_reader.aclose()
            self._payee_reader = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
        if self._owns_db_manager and self._db_manager is not None:
            await self._db_manager.dispose_async()
            self._db_manager = None

    async def process(self, event: ProtocolEvent) -> bool:
        """Apply one event in its own transaction.

        Returns:
            False if the event was skipped as already applied.

        Raises:
            RuntimeError: If the indexer is not running.
            IntegrityViolationError: If the event references an absent entity.
        """
        if not self.is_running or self._db_manager is None:
            raise RuntimeError(f"Cannot process events in state {self._state}")

        key = event_id(event)
        try:
            async with self._db_manager.get_async_session() as session:
                dispatcher = EventDispatcher(
                    session,
                    one_token_unit=self._settings.ledger.one_token_unit,
                    deduplicate=self._settings.ledger.deduplicate_events,
                    payee_reader=self._payee_reader,
                )
                applied = await dispatcher.dispatch(event)
        except IntegrityViolationError as e:
            self._state = IndexerState.ERROR
            self._stats.errors += 1
            self._stats.last_error = str(e)
            raise
        except Exception as e:
            self._stats.errors += 1
            self._stats.last_error = str(e)
            logger.exception("Failed to apply event %s", key)
            raise

        if applied:
            self._stats.events_applied += 1
            self._stats.anomalies += dispatcher.store.anomalies_recorded
        else:
            self._stats.events_skipped += 1
        self._stats.last_event_id = key
        self._stats.last_block = event.context.block.number
        return applied

    async def run(self, source: AsyncIterable[ProtocolEvent]) -> IndexerStats:
        """Start, apply every event from ``source`` in order, then stop.

        Returns:
            Final statistics.

        Raises:
            IntegrityViolationError: If an event references an absent entity;
                no later event is applied.
        """
        if self._state == IndexerState.STOPPED:
            await self.start()
        try:
            async for event in source:
                if self._stop_event is not None and self._stop_event.is_set():
                    logger.info("Stop requested; leaving feed at block %s", self._stats.last_block)
                    break
                await self.process(event)
        finally:
            await self.stop()
        return self._stats

    async def __aenter__(self) -> Indexer:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
