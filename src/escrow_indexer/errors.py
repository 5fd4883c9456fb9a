"""Exception hierarchy for the escrow indexer."""


class IndexerError(Exception):
    """Base exception for indexer errors."""


class IntegrityViolationError(IndexerError):
    """A referenced entity is absent (upstream event loss or out-of-order delivery).

    Fatal for the event being applied: its transaction is rolled back.
    """
