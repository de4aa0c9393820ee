"""Transaction tracking from agreement to completion."""

import json
import math
import logging
import sqlite3
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Set

from ..errors import (
    InconsistentBreakdownError,
    InvalidTransitionError,
    NotFoundError,
    PartialCompletionError,
    ValidationError,
)
from ..storage.database import Database
from ..storage.models import FinancialBreakdown, Transaction, TransactionStage
from ..team.agents import AgentRegistry
from .commission import CommissionEngine
from .ledger import LedgerStore

# Strict linear chain; nothing leaves COMPLETED
STAGE_TRANSITIONS: Dict[TransactionStage, Set[TransactionStage]] = {
    TransactionStage.AGREEMENT: {TransactionStage.EARNEST_MONEY},
    TransactionStage.EARNEST_MONEY: {TransactionStage.TITLE_DEED},
    TransactionStage.TITLE_DEED: {TransactionStage.COMPLETED},
    TransactionStage.COMPLETED: set(),
}


def is_valid_stage_transition(current: TransactionStage, requested: TransactionStage) -> bool:
    return requested in STAGE_TRANSITIONS.get(current, set())


class TransactionTracker:
    """Track transactions and post commissions when they complete."""

    def __init__(
        self,
        db: Database,
        agents: AgentRegistry,
        ledger: LedgerStore,
        engine: Optional[CommissionEngine] = None,
        strict_validation: bool = False,
        logger: Optional[logging.Logger] = None
    ):
        """Initialize transaction tracker.

        Args:
            db: Shared database
            agents: Registry credited when a transaction completes
            ledger: Store that receives the commission entries
            engine: Commission calculator (a default one is created if omitted)
            strict_validation: Refuse to complete when the breakdown fails
                its consistency check, instead of only logging it
            logger: Logger for this tracker
        """
        self.db = db
        self.agents = agents
        self.ledger = ledger
        self.logger = logger or logging.getLogger(__name__)
        self.engine = engine or CommissionEngine(logger=self.logger)
        self.strict_validation = strict_validation

    def _row_to_transaction(self, row: sqlite3.Row) -> Transaction:
        """Convert a database row to a Transaction object."""
        breakdown = None
        if row["financial_breakdown_json"]:
            breakdown = FinancialBreakdown.from_dict(json.loads(row["financial_breakdown_json"]))

        return Transaction(
            id=row["id"],
            property_address=row["property_address"],
            property_type=row["property_type"],
            total_service_fee=row["total_service_fee"],
            listing_agent_id=row["listing_agent_id"],
            selling_agent_id=row["selling_agent_id"],
            client_name=row["client_name"] or "",
            client_contact=row["client_contact"] or "",
            stage=TransactionStage(row["stage"]),
            financial_breakdown=breakdown,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _query(self, where: str = "", params: tuple = ()) -> List[Transaction]:
        query = "SELECT * FROM transactions"
        if where:
            query += f" WHERE {where}"
        query += " ORDER BY created_at DESC, rowid DESC"

        with self.db.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_transaction(r) for r in rows]

    # === PERSISTENCE ===

    def save(self, txn: Transaction, expected_stage: Optional[TransactionStage] = None) -> Transaction:
        """Upsert a transaction.

        Updating an existing row only touches its descriptive fields: the fee
        is never overwritten, and stage and breakdown move only through
        expected_stage. With expected_stage, the write only applies if the
        stored stage still matches, so two racing completions cannot both go
        through.
        """
        breakdown_json = (
            json.dumps(txn.financial_breakdown.to_dict()) if txn.financial_breakdown else None
        )

        with self.db.connection() as conn:
            if expected_stage is not None:
                cursor = conn.execute("""
                    UPDATE transactions SET
                        stage = ?,
                        financial_breakdown_json = COALESCE(financial_breakdown_json, ?),
                        updated_at = ?
                    WHERE id = ? AND stage = ?
                """, (
                    txn.stage.value,
                    breakdown_json,
                    txn.updated_at.isoformat(),
                    txn.id,
                    expected_stage.value,
                ))
                if cursor.rowcount == 0:
                    raise InvalidTransitionError("stage", expected_stage.value, txn.stage.value)
                return txn

            conn.execute("""
                INSERT INTO transactions (
                    id, property_address, property_type, total_service_fee, stage,
                    listing_agent_id, selling_agent_id, client_name, client_contact,
                    financial_breakdown_json, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    property_address = excluded.property_address,
                    property_type = excluded.property_type,
                    client_name = excluded.client_name,
                    client_contact = excluded.client_contact,
                    updated_at = excluded.updated_at
            """, (
                txn.id,
                txn.property_address,
                txn.property_type,
                txn.total_service_fee,
                txn.stage.value,
                txn.listing_agent_id,
                txn.selling_agent_id,
                txn.client_name,
                txn.client_contact,
                breakdown_json,
                txn.created_at.isoformat(),
                txn.updated_at.isoformat(),
            ))

        return txn

    def create_transaction(
        self,
        property_address: str,
        property_type: str,
        total_service_fee: float,
        listing_agent_id: str,
        selling_agent_id: str,
        client_name: str = "",
        client_contact: str = ""
    ) -> Transaction:
        """Create a new transaction at the agreement stage."""
        if not property_address or not property_type:
            raise ValidationError("Property address and type are required")
        if total_service_fee is None or not math.isfinite(total_service_fee) or total_service_fee <= 0:
            raise ValidationError(f"Total service fee must be positive, got {total_service_fee}")

        for agent_id in {listing_agent_id, selling_agent_id}:
            if not self.agents.exists(agent_id):
                raise NotFoundError("Agent", agent_id)

        now = datetime.now()
        txn = Transaction(
            id=str(uuid.uuid4())[:12],
            property_address=property_address,
            property_type=property_type,
            total_service_fee=float(total_service_fee),
            listing_agent_id=listing_agent_id,
            selling_agent_id=selling_agent_id,
            client_name=client_name,
            client_contact=client_contact,
            stage=TransactionStage.AGREEMENT,
            created_at=now,
            updated_at=now,
        )
        self.save(txn)

        self.logger.info(f"Created transaction {txn.id}: {property_address}")
        return txn

    def get_transaction(self, txn_id: str) -> Transaction:
        """Get a transaction by ID."""
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM transactions WHERE id = ?", (txn_id,)).fetchone()
        if not row:
            raise NotFoundError("Transaction", txn_id)
        return self._row_to_transaction(row)

    # === STAGE MACHINE ===

    def update_stage(self, txn_id: str, stage: TransactionStage) -> Transaction:
        """Advance a transaction one stage.

        Reaching COMPLETED runs the completion sequence before returning.
        Illegal requests are rejected before anything is written.
        """
        txn = self.get_transaction(txn_id)
        current = txn.stage

        if not is_valid_stage_transition(current, stage):
            raise InvalidTransitionError("stage", current.value, stage.value)

        if stage == TransactionStage.COMPLETED:
            return self._complete(txn)

        txn.stage = stage
        txn.updated_at = datetime.now()
        self.save(txn, expected_stage=current)

        self.logger.info(f"Transaction {txn_id}: {current.value} -> {stage.value}")
        return txn

    def _complete(self, txn: Transaction) -> Transaction:
        """Compute the breakdown, save it with the stage, post ledger entries and credit agents.

        The three writes are not atomic with each other. If posting or
        crediting fails the transaction stays completed and the failure is
        raised as PartialCompletionError for manual reconciliation.
        """
        previous = txn.stage
        self.logger.info(f"Processing commission for transaction: {txn.id}")

        breakdown = self.engine.calculate_breakdown(
            txn.total_service_fee, txn.listing_agent_id, txn.selling_agent_id
        )
        if not self.engine.validate_breakdown(breakdown):
            if self.strict_validation:
                raise InconsistentBreakdownError(
                    f"Breakdown for transaction {txn.id} failed validation; completion refused"
                )
            self.logger.warning(f"Transaction {txn.id} completed with an inconsistent breakdown")

        txn.stage = TransactionStage.COMPLETED
        txn.financial_breakdown = breakdown
        txn.updated_at = datetime.now()
        self.save(txn, expected_stage=previous)

        try:
            self.ledger.post_breakdown(txn.id, breakdown)
        except Exception as e:
            self.logger.error(f"Ledger posting failed for completed transaction {txn.id}: {e}")
            raise PartialCompletionError(txn.id, "ledger", e) from e

        try:
            self._credit_agents(breakdown)
        except Exception as e:
            self.logger.error(f"Agent stats update failed for completed transaction {txn.id}: {e}")
            raise PartialCompletionError(txn.id, "agent_stats", e) from e

        self.logger.info(f"Commission processed successfully for transaction: {txn.id}")
        return txn

    def _credit_agents(self, breakdown: FinancialBreakdown):
        """Credit each agent once with their share."""
        if breakdown.listing_agent_commission > 0:
            self.agents.credit_commission(
                breakdown.listing_agent_id, breakdown.listing_agent_commission
            )

        if (breakdown.selling_agent_commission > 0
                and breakdown.selling_agent_id != breakdown.listing_agent_id):
            self.agents.credit_commission(
                breakdown.selling_agent_id, breakdown.selling_agent_commission
            )

    # === QUERIES ===

    def get_all_transactions(self) -> List[Transaction]:
        return self._query()

    def get_by_stage(self, stage: TransactionStage) -> List[Transaction]:
        return self._query("stage = ?", (stage.value,))

    def get_by_agent(self, agent_id: str) -> List[Transaction]:
        """Transactions where the agent is on either side."""
        return self._query("listing_agent_id = ? OR selling_agent_id = ?", (agent_id, agent_id))

    def get_financial_summary(self, txn_id: str) -> FinancialBreakdown:
        """Get the stored breakdown of a completed transaction."""
        txn = self.get_transaction(txn_id)

        if not txn.is_completed:
            raise ValidationError(
                "Financial breakdown is only available for completed transactions"
            )
        if txn.financial_breakdown is None:
            raise NotFoundError("FinancialBreakdown", txn_id)

        return txn.financial_breakdown

    def simulate_commission(
        self,
        total_service_fee: float,
        listing_agent_id: str,
        selling_agent_id: str
    ) -> FinancialBreakdown:
        """Preview a breakdown without touching storage."""
        if total_service_fee is None or not math.isfinite(total_service_fee) or total_service_fee <= 0:
            raise ValidationError(f"Total service fee must be positive, got {total_service_fee}")
        return self.engine.calculate_breakdown(total_service_fee, listing_agent_id, selling_agent_id)

    def get_pipeline_summary(self) -> Dict[str, object]:
        """Counts and fee volume per stage."""
        by_stage = {stage.value: {"count": 0, "fee_volume": 0.0} for stage in TransactionStage}
        for txn in self.get_all_transactions():
            by_stage[txn.stage.value]["count"] += 1
            by_stage[txn.stage.value]["fee_volume"] += txn.total_service_fee

        return {
            "total_transactions": sum(s["count"] for s in by_stage.values()),
            "open_transactions": sum(
                s["count"] for k, s in by_stage.items() if k != TransactionStage.COMPLETED.value
            ),
            "by_stage": by_stage,
        }
