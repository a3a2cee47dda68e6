"""Trade ledger and reconciliation queue."""

from signalgate.ledger.entries import LedgerStatus, TradeLedgerEntry
from signalgate.ledger.reconciliation import ReconciliationQueue
from signalgate.ledger.store import TradeLedger

__all__ = ["LedgerStatus", "ReconciliationQueue", "TradeLedger", "TradeLedgerEntry"]
