"""Tests for the escrow contract reader."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from web3.exceptions import Web3Exception

from escrow_indexer.chain.escrow_reader import (
    EscrowContractReader,
    PayeeDetails,
    RateLimiter,
    RPCError,
)
from escrow_indexer.errors import IndexerError

ESCROW = "0xca38607d85e8f6294dc10728669605e6664c2d70"
VERIFIER = "0x" + "22" * 20
GATING = "0xAbCdEf0000000000000000000000000000000044"
CALL_RESULT = (GATING, '{"venmo":"@alice"}', b"\x01\x02")


def _contract(call: AsyncMock) -> MagicMock:
    contract = MagicMock()
    contract.functions.depositVerifierData.return_value.call = call
    return contract


def _reader(**kwargs) -> EscrowContractReader:
    kwargs.setdefault("retry_delay_seconds", 0)
    kwargs.setdefault("max_retries", 2)
    return EscrowContractReader("http://primary.invalid", escrow_address=ESCROW, **kwargs)


class TestPayeeDetails:
    def test_from_call_normalizes(self) -> None:
        details = PayeeDetails.from_call(CALL_RESULT)
        assert details.intent_gating_service == GATING.lower()
        assert details.payee_details == '{"venmo":"@alice"}'
        assert details.data == "0x0102"


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_acquire_up_to_capacity(self) -> None:
        limiter = RateLimiter.create(5)
        for _ in range(5):
            await limiter.acquire()
        assert limiter.tokens < 1


class TestEscrowContractReader:
    @pytest.mark.asyncio
    async def test_reads_payee_details(self, monkeypatch: pytest.MonkeyPatch) -> None:
        reader = _reader()
        call = AsyncMock(return_value=CALL_RESULT)
        contract = _contract(call)
        monkeypatch.setattr(reader, "_contract", lambda w3: contract)

        details = await reader.get_payee_details(42, VERIFIER)

        assert details.payee_details == '{"venmo":"@alice"}'
        args = contract.functions.depositVerifierData.call_args.args
        assert args[0] == 42
        assert args[1].lower() == VERIFIER

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self, monkeypatch: pytest.MonkeyPatch) -> None:
        reader = _reader()
        call = AsyncMock(side_effect=[Web3Exception("timeout"), CALL_RESULT])
        monkeypatch.setattr(reader, "_contract", lambda w3: _contract(call))

        details = await reader.get_payee_details(1, VERIFIER)

        assert details.data == "0x0102"
        assert call.await_count == 2

    @pytest.mark.asyncio
    async def test_fails_over_to_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        reader = _reader(fallback_rpc_url="http://fallback.invalid")
        primary = AsyncMock(side_effect=Web3Exception("down"))
        fallback = AsyncMock(return_value=CALL_RESULT)
        contracts = {id(reader._w3): _contract(primary), id(reader._w3_fallback): _contract(fallback)}
        monkeypatch.setattr(reader, "_contract", lambda w3: contracts[id(w3)])

        details = await reader.get_payee_details(1, VERIFIER)

        assert details.intent_gating_service == GATING.lower()
        assert primary.await_count == 2
        assert fallback.await_count == 1
        assert reader._primary_healthy is False

    @pytest.mark.asyncio
    async def test_raises_when_every_endpoint_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        reader = _reader()
        call = AsyncMock(side_effect=Web3Exception("down"))
        monkeypatch.setattr(reader, "_contract", lambda w3: _contract(call))

        with pytest.raises(RPCError, match="depositVerifierData"):
            await reader.get_payee_details(1, VERIFIER)
        assert issubclass(RPCError, IndexerError)

    @pytest.mark.asyncio
    async def test_cache_hit_skips_rpc(self, monkeypatch: pytest.MonkeyPatch) -> None:
        cached = {"intent_gating_service": GATING.lower(), "payee_details": "cached", "data": "0x"}
        redis = MagicMock()
        redis.get = AsyncMock(return_value=json.dumps(cached).encode())
        redis.set = AsyncMock()
        reader = _reader(redis=redis)
        call = AsyncMock(return_value=CALL_RESULT)
        monkeypatch.setattr(reader, "_contract", lambda w3: _contract(call))

        details = await reader.get_payee_details(7, VERIFIER)

        assert details.payee_details == "cached"
        call.assert_not_awaited()
        redis.set.assert_not_awaited()
        key = redis.get.await_args.args[0]
        assert key == f"escrow:payee:{ESCROW}:7:{VERIFIER}"

    @pytest.mark.asyncio
    async def test_cache_miss_stores_result(self, monkeypatch: pytest.MonkeyPatch) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock()
        reader = _reader(redis=redis, cache_ttl_seconds=60)
        monkeypatch.setattr(reader, "_contract", lambda w3: _contract(AsyncMock(return_value=CALL_RESULT)))

        await reader.get_payee_details(7, VERIFIER)

        stored = redis.set.await_args
        assert json.loads(stored.args[1])["data"] == "0x0102"
        assert stored.kwargs["ex"] == 60

    @pytest.mark.asyncio
    async def test_cache_errors_are_not_fatal(self, monkeypatch: pytest.MonkeyPatch) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(side_effect=ConnectionError("redis down"))
        redis.set = AsyncMock(side_effect=ConnectionError("redis down"))
        reader = _reader(redis=redis)
        monkeypatch.setattr(reader, "_contract", lambda w3: _contract(AsyncMock(return_value=CALL_RESULT)))

        details = await reader.get_payee_details(7, VERIFIER)
        assert details.data == "0x0102"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", [b"{not json", b'["a", "b"]', b'{"payee_details": "x"}'])
    async def test_malformed_cache_entry_is_a_miss(
        self, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture, raw: bytes
    ) -> None:
        redis = MagicMock()
        redis.get = AsyncMock(return_value=raw)
        redis.set = AsyncMock()
        reader = _reader(redis=redis)
        call = AsyncMock(return_value=CALL_RESULT)
        monkeypatch.setattr(reader, "_contract", lambda w3: _contract(call))

        details = await reader.get_payee_details(7, VERIFIER)

        assert details.payee_details == '{"venmo":"@alice"}'
        call.assert_awaited_once()
        redis.set.assert_awaited_once()
        assert "malformed payee cache entry" in caplog.text
