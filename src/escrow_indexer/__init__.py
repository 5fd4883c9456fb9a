"""Escrow Indexer - event-sourced materialization of escrow protocol state."""

__version__ = "0.1.0"
