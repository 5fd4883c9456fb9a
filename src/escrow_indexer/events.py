"""Decoded escrow protocol events.

The log source delivers one decoded event at a time in chain order. Each
event carries its on-chain provenance (``LogContext``) plus its typed
arguments. ``from_args`` builds an event from the decoded argument mapping
the log source emits; no ABI decoding happens here.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

from escrow_indexer import ids
from escrow_indexer.ids import EventKind


def _addr(value: Any) -> str:
    return ids.normalize_hex(str(value))


def _hexstr(value: Any) -> str:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return "0x" + bytes(value).hex()
    return ids.normalize_hex(str(value))


@dataclass(frozen=True)
class BlockInfo:
    """Originating block."""

    number: int
    timestamp: int
    hash: str


@dataclass(frozen=True)
class TransactionInfo:
    """Originating transaction."""

    hash: str
    index: int
    from_address: str
    to_address: str | None = None


@dataclass(frozen=True)
class LogContext:
    """Provenance shared by every event."""

    chain_id: int
    block: BlockInfo
    transaction: TransactionInfo
    log_index: int

    @classmethod
    def from_dict(cls, chain_id: int, data: Mapping[str, Any]) -> LogContext:
        """Create a context from web3-style log, block and transaction fields."""
        to_address = data.get("to")
        return cls(
            chain_id=chain_id,
            block=BlockInfo(
                number=int(data["blockNumber"]),
                timestamp=int(data["timestamp"]),
                hash=_hexstr(data["blockHash"]),
            ),
            transaction=TransactionInfo(
                hash=_hexstr(data["transactionHash"]),
                index=int(data["transactionIndex"]),
                from_address=_addr(data["from"]),
                to_address=_addr(to_address) if to_address else None,
            ),
            log_index=int(data["logIndex"]),
        )

    @property
    def timestamp(self) -> int:
        return self.block.timestamp

    @property
    def log_id(self) -> str:
        return ids.log_id(
            chain_id=self.chain_id,
            timestamp=self.block.timestamp,
            tx_index=self.transaction.index,
            log_index=self.log_index,
        )

    def order_id(self, kind: EventKind) -> str:
        return ids.order_id(
            kind,
            chain_id=self.chain_id,
            timestamp=self.block.timestamp,
            tx_index=self.transaction.index,
            log_index=self.log_index,
        )

    @property
    def block_id(self) -> str:
        return ids.block_id(self.chain_id, self.block.hash)

    @property
    def transaction_id(self) -> str:
        return ids.transaction_id(self.chain_id, self.transaction.hash)

    @property
    def sender_id(self) -> str:
        return ids.participant_id(self.chain_id, self.transaction.from_address)


@dataclass(frozen=True)
class DepositEvent:
    """Base for events bound to a deposit and ordered by kind priority."""

    KIND: ClassVar[EventKind]

    context: LogContext
    deposit_id: int

    @property
    def order_id(self) -> str:
        return self.context.order_id(self.KIND)


@dataclass(frozen=True)
class DepositReceived(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.DEPOSIT

    depositor: str
    token: str
    amount: int
    min_amount: int
    max_amount: int

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> DepositReceived:
        intent_range = args["intentAmountRange"]
        if isinstance(intent_range, Mapping):
            min_amount, max_amount = intent_range["min"], intent_range["max"]
        else:
            min_amount, max_amount = intent_range
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            depositor=_addr(args["depositor"]),
            token=_addr(args["token"]),
            amount=int(args["amount"]),
            min_amount=int(min_amount),
            max_amount=int(max_amount),
        )


@dataclass(frozen=True)
class DepositVerifierAdded(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.VERIFIER_ADDED

    verifier: str
    payee_details_hash: str
    intent_gating_service: str

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> DepositVerifierAdded:
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            verifier=_addr(args["verifier"]),
            payee_details_hash=_hexstr(args["payeeDetailsHash"]),
            intent_gating_service=_addr(args["intentGatingService"]),
        )


@dataclass(frozen=True)
class DepositCurrencyAdded(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.CURRENCY_ADDED

    verifier: str
    currency: str
    conversion_rate: int

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> DepositCurrencyAdded:
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            verifier=_addr(args["verifier"]),
            currency=_hexstr(args["currency"]),
            conversion_rate=int(args["conversionRate"]),
        )


@dataclass(frozen=True)
class DepositConversionRateUpdated(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.RATE_UPDATE

    verifier: str
    currency: str
    new_conversion_rate: int

    @classmethod
    def from_args(
        cls, context: LogContext, args: Mapping[str, Any]
    ) -> DepositConversionRateUpdated:
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            verifier=_addr(args["verifier"]),
            currency=_hexstr(args["currency"]),
            new_conversion_rate=int(args["newConversionRate"]),
        )


@dataclass(frozen=True)
class IntentSignaled(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.INTENT_SIGNALED

    intent_hash: str
    verifier: str
    owner: str
    to: str
    amount: int
    fiat_currency: str

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> IntentSignaled:
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            intent_hash=_hexstr(args["intentHash"]),
            verifier=_addr(args["verifier"]),
            owner=_addr(args["owner"]),
            to=_addr(args["to"]),
            amount=int(args["amount"]),
            fiat_currency=_hexstr(args["fiatCurrency"]),
        )


@dataclass(frozen=True)
class IntentFulfilled(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.INTENT_FULFILLED

    intent_hash: str
    verifier: str
    owner: str
    to: str
    amount: int
    sustainability_fee: int
    verifier_fee: int

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> IntentFulfilled:
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            intent_hash=_hexstr(args["intentHash"]),
            verifier=_addr(args["verifier"]),
            owner=_addr(args["owner"]),
            to=_addr(args["to"]),
            amount=int(args["amount"]),
            sustainability_fee=int(args["sustainabilityFee"]),
            verifier_fee=int(args["verifierFee"]),
        )


@dataclass(frozen=True)
class IntentPruned(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.INTENT_PRUNED

    intent_hash: str

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> IntentPruned:
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            intent_hash=_hexstr(args["intentHash"]),
        )


@dataclass(frozen=True)
class DepositWithdrawn(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.WITHDRAWAL

    depositor: str
    amount: int

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> DepositWithdrawn:
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            depositor=_addr(args["depositor"]),
            amount=int(args["amount"]),
        )


@dataclass(frozen=True)
class DepositClosed(DepositEvent):
    KIND: ClassVar[EventKind] = EventKind.CLOSED

    depositor: str

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> DepositClosed:
        return cls(
            context=context,
            deposit_id=int(args["depositId"]),
            depositor=_addr(args["depositor"]),
        )


@dataclass(frozen=True)
class PaymentVerifierEvent:
    """Base for protocol-level verifier registry events (keyed by log id)."""

    context: LogContext
    verifier: str

    @property
    def event_id(self) -> str:
        return self.context.log_id


@dataclass(frozen=True)
class PaymentVerifierAdded(PaymentVerifierEvent):
    fee_share: int

    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> PaymentVerifierAdded:
        return cls(
            context=context,
            verifier=_addr(args["verifier"]),
            fee_share=int(args["feeShare"]),
        )


@dataclass(frozen=True)
class PaymentVerifierFeeShareUpdated(PaymentVerifierEvent):
    fee_share: int

    @classmethod
    def from_args(
        cls, context: LogContext, args: Mapping[str, Any]
    ) -> PaymentVerifierFeeShareUpdated:
        return cls(
            context=context,
            verifier=_addr(args["verifier"]),
            fee_share=int(args["feeShare"]),
        )


@dataclass(frozen=True)
class PaymentVerifierRemoved(PaymentVerifierEvent):
    @classmethod
    def from_args(cls, context: LogContext, args: Mapping[str, Any]) -> PaymentVerifierRemoved:
        return cls(context=context, verifier=_addr(args["verifier"]))


ProtocolEvent = (
    DepositReceived
    | DepositVerifierAdded
    | DepositCurrencyAdded
    | DepositConversionRateUpdated
    | IntentSignaled
    | IntentFulfilled
    | IntentPruned
    | DepositWithdrawn
    | DepositClosed
    | PaymentVerifierAdded
    | PaymentVerifierFeeShareUpdated
    | PaymentVerifierRemoved
)

# Contract event name -> event type, for log sources that hand over (name, args).
EVENT_TYPES: dict[str, type[Any]] = {
    "DepositReceived": DepositReceived,
    "DepositVerifierAdded": DepositVerifierAdded,
    "DepositCurrencyAdded": DepositCurrencyAdded,
    "DepositConversionRateUpdated": DepositConversionRateUpdated,
    "IntentSignaled": IntentSignaled,
    "IntentFulfilled": IntentFulfilled,
    "IntentPruned": IntentPruned,
    "DepositWithdrawn": DepositWithdrawn,
    "DepositClosed": DepositClosed,
    "PaymentVerifierAdded": PaymentVerifierAdded,
    "PaymentVerifierFeeShareUpdated": PaymentVerifierFeeShareUpdated,
    "PaymentVerifierRemoved": PaymentVerifierRemoved,
}


def build_event(name: str, context: LogContext, args: Mapping[str, Any]) -> ProtocolEvent:
    """Build a typed event from its contract event name and decoded args.

    Raises:
        KeyError: If the event name is not an escrow event this indexer handles.
    """
    try:
        event_type = EVENT_TYPES[name]
    except KeyError:
        raise KeyError(f"Unsupported escrow event: {name}") from None
    event: ProtocolEvent = event_type.from_args(context, args)
    return event
