"""Storage layer for agents, transactions and commissions."""

from .database import Database
from .models import (
    Agent,
    AgentType,
    Commission,
    CommissionStatus,
    CommissionType,
    FinancialBreakdown,
    Transaction,
    TransactionStage,
)

__all__ = [
    "Database",
    "Agent",
    "AgentType",
    "Commission",
    "CommissionStatus",
    "CommissionType",
    "FinancialBreakdown",
    "Transaction",
    "TransactionStage",
]
