"""Transaction lifecycle, commission calculation and the commission ledger."""

from .tracker import TransactionTracker, STAGE_TRANSITIONS
from .commission import CommissionEngine
from .ledger import LedgerStore, STATUS_TRANSITIONS

__all__ = [
    "TransactionTracker",
    "STAGE_TRANSITIONS",
    "CommissionEngine",
    "LedgerStore",
    "STATUS_TRANSITIONS",
]
