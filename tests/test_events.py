"""Tests for decoded escrow events."""

import typing

import pytest

from escrow_indexer import ids
from escrow_indexer.events import (
    EVENT_TYPES,
    DepositClosed,
    DepositReceived,
    IntentFulfilled,
    LogContext,
    PaymentVerifierAdded,
    ProtocolEvent,
    build_event,
)
from escrow_indexer.ids import EventKind

CHAIN_ID = 8453


@pytest.fixture
def raw_log() -> dict:
    return {
        "blockNumber": 25_303_500,
        "timestamp": 1_700_000_000,
        "blockHash": bytes.fromhex("ab" * 32),
        "transactionHash": "0x" + "CD" * 32,
        "transactionIndex": 3,
        "from": "0x" + "AA" * 20,
        "to": "0xCA38607D85E8F6294DC10728669605E6664C2D70",
        "logIndex": 7,
    }


@pytest.fixture
def context(raw_log: dict) -> LogContext:
    return LogContext.from_dict(CHAIN_ID, raw_log)


class TestLogContext:
    def test_from_dict_normalizes_hex(self, context: LogContext) -> None:
        assert context.block.hash == "0x" + "ab" * 32
        assert context.transaction.hash == "0x" + "cd" * 32
        assert context.transaction.from_address == "0x" + "aa" * 20
        assert context.transaction.to_address == "0xca38607d85e8f6294dc10728669605e6664c2d70"
        assert context.log_index == 7

    def test_missing_to_address(self, raw_log: dict) -> None:
        raw_log["to"] = None
        assert LogContext.from_dict(CHAIN_ID, raw_log).transaction.to_address is None

    def test_derived_ids(self, context: LogContext) -> None:
        assert context.log_id == ids.log_id(
            chain_id=CHAIN_ID, timestamp=1_700_000_000, tx_index=3, log_index=7
        )
        assert context.block_id == ids.block_id(CHAIN_ID, "0x" + "ab" * 32)
        assert context.sender_id == ids.participant_id(CHAIN_ID, "0x" + "aa" * 20)


class TestFromArgs:
    def test_deposit_received_tuple_range(self, context: LogContext) -> None:
        event = DepositReceived.from_args(
            context,
            {
                "depositId": 42,
                "depositor": "0x" + "11" * 20,
                "token": "0x833589FCD6EDB6E08F4C7C32D4F71B54BDA02913",
                "amount": 1_000_000_000,
                "intentAmountRange": (1_000_000, 500_000_000),
            },
        )
        assert event.deposit_id == 42
        assert event.token == "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
        assert (event.min_amount, event.max_amount) == (1_000_000, 500_000_000)
        assert event.order_id == context.order_id(EventKind.DEPOSIT)

    def test_deposit_received_mapping_range(self, context: LogContext) -> None:
        event = DepositReceived.from_args(
            context,
            {
                "depositId": 1,
                "depositor": "0x" + "11" * 20,
                "token": "0x" + "22" * 20,
                "amount": 10,
                "intentAmountRange": {"min": 1, "max": 5},
            },
        )
        assert (event.min_amount, event.max_amount) == (1, 5)

    def test_intent_fulfilled_bytes_hash(self, context: LogContext) -> None:
        event = IntentFulfilled.from_args(
            context,
            {
                "intentHash": bytes.fromhex("0f" * 32),
                "depositId": 1,
                "verifier": "0x" + "22" * 20,
                "owner": "0x" + "33" * 20,
                "to": "0x" + "33" * 20,
                "amount": 100,
                "sustainabilityFee": 1,
                "verifierFee": 2,
            },
        )
        assert event.intent_hash == "0x" + "0f" * 32
        assert event.KIND is EventKind.INTENT_FULFILLED

    def test_payment_verifier_event_keyed_by_log_id(self, context: LogContext) -> None:
        event = PaymentVerifierAdded.from_args(
            context, {"verifier": "0x" + "22" * 20, "feeShare": 10}
        )
        assert event.event_id == context.log_id


class TestBuildEvent:
    def test_builds_by_name(self, context: LogContext) -> None:
        event = build_event(
            "DepositClosed", context, {"depositId": 9, "depositor": "0x" + "11" * 20}
        )
        assert isinstance(event, DepositClosed)
        assert event.deposit_id == 9

    def test_unknown_event_rejected(self, context: LogContext) -> None:
        with pytest.raises(KeyError, match="MinDepositAmountSet"):
            build_event("MinDepositAmountSet", context, {"minDepositAmount": 1})

    def test_every_event_type_is_registered(self) -> None:
        assert set(EVENT_TYPES.values()) == set(typing.get_args(ProtocolEvent))
