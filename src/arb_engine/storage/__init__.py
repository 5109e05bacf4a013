"""Record store module."""

from .journal import RecordStore, TradeJournal

__all__ = ["RecordStore", "TradeJournal"]
