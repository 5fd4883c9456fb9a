"""Deterministic identifiers for materialized records.

Every derived record is keyed by an id computed from the event that produced
it, so replays resolve to the same key. Ids are lowercase ``0x`` hex strings of
fixed width per id kind, which makes string order equal to byte order.

Layouts:
    block / transaction / participant: keccak(chainId(8B) || discriminant)
    log id:          timestamp(8B) || txIndex(4B) || logIndex(4B) || chainId(4B)
    ordered id:      timestamp(8B) || txIndex(4B) || kind(1B) || logIndex(4B) || chainId(4B)
    verifier track:  keccak(chainId(8B) || verifier(20B) || depositId(32B))
    currency track:  keccak(verifierTrack(32B) || currency(32B))
    rate version:    currencyTrack(32B) || changeId(4B)
    stat bucket:     bucketStart(8B) || keccak(width, action, token, currency?, verifier)[:24]
"""

from __future__ import annotations

from enum import Enum, IntEnum

from web3 import Web3

ID_SIZE = 32
STAT_HASH_SIZE = 24


class EventKind(IntEnum):
    """Business event kinds, valued by their intra-transaction priority."""

    DEPOSIT = 0
    VERIFIER_ADDED = 1
    CURRENCY_ADDED = 2
    RATE_UPDATE = 3
    INTENT_SIGNALED = 4
    INTENT_FULFILLED = 5
    INTENT_PRUNED = 6
    WITHDRAWAL = 7
    CLOSED = 8


class BucketWidth(Enum):
    """Statistic bucket widths in seconds."""

    HOUR = 3_600
    DAY = 86_400
    MONTH = 30 * 86_400

    @property
    def tag(self) -> str:
        return self.name.lower()


def _strip_0x(value: str) -> str:
    return value[2:] if value.startswith(("0x", "0X")) else value


def _hex(data: bytes) -> str:
    return "0x" + data.hex()


def _uint(value: int, size: int) -> bytes:
    if value < 0:
        raise ValueError(f"Cannot encode negative value {value} as uint{size * 8}")
    return value.to_bytes(size, "big")


def _fixed(value: str, size: int, *, name: str) -> bytes:
    raw = bytes.fromhex(_strip_0x(value))
    if len(raw) != size:
        raise ValueError(f"{name} must be {size} bytes, got {len(raw)}")
    return raw


def _address(value: str) -> bytes:
    return _fixed(value, 20, name="address")


def _bytes32(value: str) -> bytes:
    return _fixed(value, 32, name="bytes32")


def keccak(*parts: bytes) -> bytes:
    """Keccak-256 of the concatenated parts."""
    return bytes(Web3.keccak(b"".join(parts)))


def normalize_hex(value: str) -> str:
    """Lowercase a hex string and ensure the ``0x`` prefix."""
    return "0x" + _strip_0x(value).lower()


def block_id(chain_id: int, block_hash: str) -> str:
    return _hex(keccak(_uint(chain_id, 8), _bytes32(block_hash)))


def transaction_id(chain_id: int, tx_hash: str) -> str:
    return _hex(keccak(_uint(chain_id, 8), _bytes32(tx_hash)))


def participant_id(chain_id: int, address: str) -> str:
    return _hex(keccak(_uint(chain_id, 8), _address(address)))


def log_id(*, chain_id: int, timestamp: int, tx_index: int, log_index: int) -> str:
    """Id of a raw log entry, sorted by block time, tx position, log position."""
    return _hex(
        _uint(timestamp, 8) + _uint(tx_index, 4) + _uint(log_index, 4) + _uint(chain_id, 4)
    )


def order_id(
    kind: EventKind,
    *,
    chain_id: int,
    timestamp: int,
    tx_index: int,
    log_index: int,
) -> str:
    """Id of a business event.

    The kind priority byte sits between the transaction index and the log
    index, so events sharing a transaction sort by kind before log position.
    """
    return _hex(
        _uint(timestamp, 8)
        + _uint(tx_index, 4)
        + _uint(int(kind), 1)
        + _uint(log_index, 4)
        + _uint(chain_id, 4)
    )


def verifier_track_id(chain_id: int, verifier: str, deposit_id: int) -> str:
    return _hex(keccak(_uint(chain_id, 8), _address(verifier), _uint(deposit_id, 32)))


def currency_track_id(verifier_track: str, currency: str) -> str:
    return _hex(keccak(_bytes32(verifier_track), _bytes32(currency)))


def rate_version_id(currency_track: str, change_id: int) -> str:
    """Rate version id; its first 32 bytes are the owning currency track id."""
    return _hex(_bytes32(currency_track) + _uint(change_id, 4))


def rate_track_prefix(version_id: str) -> str:
    """Currency track id embedded in a rate version id."""
    return normalize_hex(version_id)[: 2 + ID_SIZE * 2]


def bucket_start(timestamp: int, width: BucketWidth) -> int:
    """Floor a unix timestamp to the start of its bucket."""
    return timestamp // width.value * width.value


def stat_id(
    *,
    timestamp: int,
    width: BucketWidth,
    action: str,
    token: str,
    currency: str | None,
    verifier: str,
) -> str:
    digest = keccak(
        width.tag.encode(),
        b"\x00",
        action.encode(),
        b"\x00",
        _address(token),
        _address(verifier),
        _bytes32(currency) if currency is not None else b"",
    )
    return _hex(_uint(bucket_start(timestamp, width), 8) + digest[:STAT_HASH_SIZE])
