"""Processing ledger: stores, and the record state machine."""

from .base import Ledger
from .memory import InMemoryLedger
from .sqlite import SqliteLedger

__all__ = ["InMemoryLedger", "Ledger", "SqliteLedger"]
