"""Conversion-rate track manager.

A track is the (deposit, verifier, currency) lineage of conversion rates. It
is an append-only list of versions with gapless change ids starting at 0;
exactly one version is active, and the currency-added record holds a pointer
to it. Intents keep the id of the version active when they were signaled, so
later updates never change an intent's effective rate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from escrow_indexer import ids
from escrow_indexer.errors import IntegrityViolationError
from escrow_indexer.storage.models import (
    ConversionRateVersionModel,
    DepositCurrencyModel,
    DepositVerifierModel,
)
from escrow_indexer.storage.repos import (
    CurrencyTrackDTO,
    LedgerStore,
    RateVersionDTO,
    to_numeric,
)

if TYPE_CHECKING:
    from escrow_indexer.events import (
        DepositConversionRateUpdated,
        DepositCurrencyAdded,
        DepositVerifierAdded,
        LogContext,
    )

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FrozenRate:
    """Track ids and the version id captured when an intent is signaled."""

    deposit_verifier_id: str
    deposit_currency_id: str
    rate_version_id: str


class RateTrackManager:
    """Opens verifier/currency tracks and versions their conversion rates."""

    def __init__(self, store: LedgerStore) -> None:
        self._store = store

    async def add_verifier(self, event: DepositVerifierAdded, *, participant_id: str) -> str:
        """Record a (deposit, verifier) pairing.

        Returns:
            The verifier track id.
        """
        ctx = event.context
        track_id = ids.verifier_track_id(ctx.chain_id, event.verifier, event.deposit_id)
        await self._store.insert_if_absent(
            DepositVerifierModel,
            {
                "deposit_verifier_id": track_id,
                "order_id": event.order_id,
                "log_id": ctx.log_id,
                "chain_id": ctx.chain_id,
                "deposit_id": event.deposit_id,
                "verifier": event.verifier,
                "payee_details_hash": event.payee_details_hash,
                "intent_gating_service": event.intent_gating_service,
                "transaction_id": ctx.transaction_id,
                "participant_id": participant_id,
            },
        )
        return track_id

    async def open_track(
        self, event: DepositCurrencyAdded, *, participant_id: str
    ) -> CurrencyTrackDTO:
        """Open a currency track with version 0 active.

        Raises:
            IntegrityViolationError: If the verifier was never added to the deposit.
        """
        ctx = event.context
        verifier_track = ids.verifier_track_id(ctx.chain_id, event.verifier, event.deposit_id)
        if await self._store.get_verifier_track(verifier_track) is None:
            raise IntegrityViolationError(
                f"Currency {event.currency} added for verifier {event.verifier} "
                f"never added to deposit {event.deposit_id}"
            )

        currency_track = ids.currency_track_id(verifier_track, event.currency)
        version_id = ids.rate_version_id(currency_track, 0)
        created = await self._store.insert_if_absent(
            DepositCurrencyModel,
            {
                "deposit_currency_id": currency_track,
                "deposit_verifier_id": verifier_track,
                "order_id": event.order_id,
                "log_id": ctx.log_id,
                "chain_id": ctx.chain_id,
                "deposit_id": event.deposit_id,
                "verifier": event.verifier,
                "currency": event.currency,
                "current_rate_version_id": version_id,
                "transaction_id": ctx.transaction_id,
                "participant_id": participant_id,
            },
        )
        if created:
            await self._insert_version(
                ctx,
                order_id=event.order_id,
                verifier_track=verifier_track,
                currency_track=currency_track,
                deposit_id=event.deposit_id,
                verifier=event.verifier,
                currency=event.currency,
                change_id=0,
                value=event.conversion_rate,
            )
        else:
            logger.info("Currency track %s already open; keeping existing versions", currency_track)

        track = await self._store.get_currency_track(currency_track)
        if track is None:
            raise IntegrityViolationError(f"Currency track {currency_track} not written")
        return track

    async def update_rate(self, event: DepositConversionRateUpdated) -> RateVersionDTO:
        """Append a new active version and retire the previous one.

        Raises:
            IntegrityViolationError: If the track or its current version is missing.
        """
        ctx = event.context
        verifier_track = ids.verifier_track_id(ctx.chain_id, event.verifier, event.deposit_id)
        currency_track = ids.currency_track_id(verifier_track, event.currency)

        track = await self._store.get_currency_track(currency_track)
        if track is None:
            raise IntegrityViolationError(
                f"Rate update for unopened track (deposit={event.deposit_id}, "
                f"verifier={event.verifier}, currency={event.currency})"
            )
        replayed = await self._store.find_rate_version_by_order(currency_track, event.order_id)
        if replayed is not None:
            logger.info(
                "Rate update %s already applied as change %d of track %s",
                event.order_id,
                replayed.change_id,
                currency_track,
            )
            return replayed

        current = await self._store.get_rate_version(track.current_rate_version_id)
        if current is None:
            raise IntegrityViolationError(
                f"Current rate version {track.current_rate_version_id} of track "
                f"{currency_track} not found"
            )

        next_change_id = current.change_id + 1
        next_version_id = ids.rate_version_id(currency_track, next_change_id)

        await self._store.update(
            ConversionRateVersionModel, current.rate_version_id, lambda _row: {"active": False}
        )
        await self._insert_version(
            ctx,
            order_id=event.order_id,
            verifier_track=verifier_track,
            currency_track=currency_track,
            deposit_id=event.deposit_id,
            verifier=event.verifier,
            currency=event.currency,
            change_id=next_change_id,
            value=event.new_conversion_rate,
        )
        await self._store.update(
            DepositCurrencyModel,
            currency_track,
            lambda _row: {"current_rate_version_id": next_version_id},
        )
        logger.debug(
            "Track %s rate version %d -> %d", currency_track, current.change_id, next_change_id
        )

        version = await self._store.get_rate_version(next_version_id)
        if version is None:
            raise IntegrityViolationError(
                f"Rate version {next_version_id} of track {currency_track} not written"
            )
        return version

    async def current_version(self, deposit_currency_id: str) -> RateVersionDTO:
        """Active version of a track.

        Raises:
            IntegrityViolationError: If the track or its current version is missing.
        """
        track = await self._store.get_currency_track(deposit_currency_id)
        if track is None:
            raise IntegrityViolationError(f"Currency track {deposit_currency_id} not found")
        version = await self._store.get_rate_version(track.current_rate_version_id)
        if version is None:
            raise IntegrityViolationError(
                f"Current rate version {track.current_rate_version_id} not found"
            )
        return version

    async def freeze(
        self, chain_id: int, deposit_id: int, *, verifier: str, currency: str
    ) -> FrozenRate:
        """Capture the version currently active on a track.

        Raises:
            IntegrityViolationError: If the track was never opened.
        """
        verifier_track = ids.verifier_track_id(chain_id, verifier, deposit_id)
        currency_track = ids.currency_track_id(verifier_track, currency)
        version = await self.current_version(currency_track)
        return FrozenRate(
            deposit_verifier_id=verifier_track,
            deposit_currency_id=currency_track,
            rate_version_id=version.rate_version_id,
        )

    async def _insert_version(
        self,
        ctx: LogContext,
        *,
        order_id: str,
        verifier_track: str,
        currency_track: str,
        deposit_id: int,
        verifier: str,
        currency: str,
        change_id: int,
        value: int,
    ) -> None:
        await self._store.insert_if_absent(
            ConversionRateVersionModel,
            {
                "rate_version_id": ids.rate_version_id(currency_track, change_id),
                "deposit_currency_id": currency_track,
                "deposit_verifier_id": verifier_track,
                "order_id": order_id,
                "log_id": ctx.log_id,
                "transaction_id": ctx.transaction_id,
                "chain_id": ctx.chain_id,
                "deposit_id": deposit_id,
                "verifier": verifier,
                "currency": currency,
                "change_id": change_id,
                "value": to_numeric(value),
                "active": True,
            },
        )
