"""Chain access - auxiliary escrow contract reads."""

from escrow_indexer.chain.escrow_reader import (
    EscrowContractReader,
    EscrowReaderError,
    PayeeDetails,
    RPCError,
)

__all__ = [
    "EscrowContractReader",
    "EscrowReaderError",
    "PayeeDetails",
    "RPCError",
]
