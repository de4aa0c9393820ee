"""Commission ledger: payable entries derived from completed transactions."""

import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Set, Any

from ..errors import InvalidTransitionError, NotFoundError
from ..storage.database import Database
from ..storage.models import (
    Commission,
    CommissionStatus,
    CommissionType,
    FinancialBreakdown,
)

# Paid is terminal; processing may be skipped
STATUS_TRANSITIONS: Dict[CommissionStatus, Set[CommissionStatus]] = {
    CommissionStatus.PENDING: {CommissionStatus.PROCESSED, CommissionStatus.PAID},
    CommissionStatus.PROCESSED: {CommissionStatus.PAID},
    CommissionStatus.PAID: set(),
}

# Newest first; rowid breaks ties within one bulk insert
NEWEST_FIRST = "ORDER BY created_at DESC, rowid DESC"


def is_valid_status_transition(current: CommissionStatus, requested: CommissionStatus) -> bool:
    return requested in STATUS_TRANSITIONS.get(current, set())


def build_ledger_entries(transaction_id: str, breakdown: FinancialBreakdown) -> List[Commission]:
    """Turn a breakdown into pending ledger entries, one per nonzero component."""
    now = datetime.now()
    components = [
        (CommissionType.AGENCY, None, breakdown.agency_commission, "Agency commission"),
        (CommissionType.LISTING, breakdown.listing_agent_id,
         breakdown.listing_agent_commission, "Listing commission"),
        (CommissionType.SELLING, breakdown.selling_agent_id,
         breakdown.selling_agent_commission, "Selling commission"),
    ]

    return [
        Commission(
            id=str(uuid.uuid4())[:12],
            transaction_id=transaction_id,
            agent_id=agent_id,
            amount=amount,
            commission_type=commission_type,
            status=CommissionStatus.PENDING,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        for commission_type, agent_id, amount, notes in components
        if amount > 0
    ]


class LedgerStore:
    """Append-only store of commission ledger entries."""

    def __init__(self, db: Database, logger: Optional[logging.Logger] = None):
        self.db = db
        self.logger = logger or logging.getLogger(__name__)

    def _row_to_commission(self, row: sqlite3.Row) -> Commission:
        """Convert a database row to a Commission object."""
        return Commission(
            id=row["id"],
            transaction_id=row["transaction_id"],
            agent_id=row["agent_id"],
            amount=row["amount"],
            commission_type=CommissionType(row["commission_type"]),
            status=CommissionStatus(row["status"]),
            paid_date=datetime.fromisoformat(row["paid_date"]) if row["paid_date"] else None,
            notes=row["notes"] or "",
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _query(self, where: str = "", params: tuple = ()) -> List[Commission]:
        query = "SELECT * FROM commissions"
        if where:
            query += f" WHERE {where}"
        query += f" {NEWEST_FIRST}"

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_commission(r) for r in rows]

    # === WRITES ===

    def insert_many(self, commissions: List[Commission]) -> List[Commission]:
        """Insert ledger entries in a single database transaction."""
        if not commissions:
            return []

        with self.db.connection() as conn:
            conn.executemany("""
                INSERT INTO commissions (
                    id, transaction_id, agent_id, amount, commission_type,
                    status, paid_date, notes, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    c.id,
                    c.transaction_id,
                    c.agent_id,
                    c.amount,
                    c.commission_type.value,
                    c.status.value,
                    c.paid_date.isoformat() if c.paid_date else None,
                    c.notes,
                    c.created_at.isoformat(),
                    c.updated_at.isoformat(),
                )
                for c in commissions
            ])

        self.logger.info(
            f"Created {len(commissions)} commission records for transaction: "
            f"{commissions[0].transaction_id}"
        )
        return commissions

    def post_breakdown(self, transaction_id: str, breakdown: FinancialBreakdown) -> List[Commission]:
        """Materialize a breakdown as ledger entries.

        Not idempotent: calling twice for the same transaction posts twice.
        """
        return self.insert_many(build_ledger_entries(transaction_id, breakdown))

    def update_status(
        self,
        commission_id: str,
        status: CommissionStatus,
        notes: Optional[str] = None
    ) -> Commission:
        """Move a commission along its payment lifecycle."""
        commission = self.get_commission(commission_id)

        if not is_valid_status_transition(commission.status, status):
            raise InvalidTransitionError("status", commission.status.value, status.value)

        now = datetime.now()
        commission.status = status
        commission.updated_at = now
        if status == CommissionStatus.PAID:
            commission.paid_date = now
        if notes:
            commission.notes = notes

        with self.db.connection() as conn:
            conn.execute("""
                UPDATE commissions SET status = ?, paid_date = ?, notes = ?, updated_at = ?
                WHERE id = ?
            """, (
                commission.status.value,
                commission.paid_date.isoformat() if commission.paid_date else None,
                commission.notes,
                now.isoformat(),
                commission.id,
            ))

        self.logger.info(f"Commission {commission_id} status -> {status.value}")
        return commission

    # === QUERIES ===

    def get_commission(self, commission_id: str) -> Commission:
        """Get a commission by ID."""
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM commissions WHERE id = ?", (commission_id,)).fetchone()
        if not row:
            raise NotFoundError("Commission", commission_id)
        return self._row_to_commission(row)

    def get_all(self) -> List[Commission]:
        return self._query()

    def get_by_agent(self, agent_id: str) -> List[Commission]:
        return self._query("agent_id = ?", (agent_id,))

    def get_by_status(self, status: CommissionStatus) -> List[Commission]:
        return self._query("status = ?", (status.value,))

    def get_by_transaction(self, transaction_id: str) -> List[Commission]:
        return self._query("transaction_id = ?", (transaction_id,))

    def get_pending(self) -> List[Commission]:
        return self.get_by_status(CommissionStatus.PENDING)

    # === SUMMARIES ===

    def get_agent_summary(self, agent_id: str) -> Dict[str, Any]:
        """Get commission summary for an agent."""
        commissions = self.get_by_agent(agent_id)

        def total(status: CommissionStatus) -> float:
            return sum(c.amount for c in commissions if c.status == status)

        return {
            'agent_id': agent_id,
            'total_earned': round(total(CommissionStatus.PAID), 2),
            'pending_amount': round(total(CommissionStatus.PENDING), 2),
            'processed_amount': round(total(CommissionStatus.PROCESSED), 2),
            'total_transactions': len(commissions),
            'paid_transactions': len([c for c in commissions if c.status == CommissionStatus.PAID]),
        }

    def get_overall_summary(self) -> Dict[str, Any]:
        """Get summary across the whole ledger."""
        commissions = self.get_all()

        pool = sum(c.amount for c in commissions)
        paid = sum(c.amount for c in commissions if c.status == CommissionStatus.PAID)
        pending = sum(c.amount for c in commissions if c.status == CommissionStatus.PENDING)
        processed = sum(c.amount for c in commissions if c.status == CommissionStatus.PROCESSED)

        by_type: Dict[str, float] = {}
        for c in commissions:
            by_type[c.commission_type.value] = by_type.get(c.commission_type.value, 0) + c.amount

        return {
            'total_commission_pool': round(pool, 2),
            'paid_total': round(paid, 2),
            'pending_total': round(pending, 2),
            'processed_total': round(processed, 2),
            'total_commissions': len(commissions),
            'paid_commissions': len([c for c in commissions if c.status == CommissionStatus.PAID]),
            'pending_commissions': len([c for c in commissions if c.status == CommissionStatus.PENDING]),
            'by_type': {k: round(v, 2) for k, v in by_type.items()},
        }
