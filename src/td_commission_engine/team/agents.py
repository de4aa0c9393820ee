"""Agent registry for the brokerage."""

import logging
import math
import sqlite3
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Any

from ..errors import ConflictError, NotFoundError, ValidationError
from ..storage.database import Database
from ..storage.models import Agent, AgentType

# Fields a caller may change through update_agent; the totals are excluded
UPDATABLE_FIELDS = ("email", "first_name", "last_name", "phone", "agent_type")


class AgentRegistry:
    """Manage agents and their cumulative commission stats."""

    def __init__(self, db: Database, logger: Optional[logging.Logger] = None):
        self.db = db
        self.logger = logger or logging.getLogger(__name__)

    def _row_to_agent(self, row: sqlite3.Row) -> Agent:
        """Convert a database row to an Agent object."""
        return Agent(
            id=row["id"],
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            phone=row["phone"] or "",
            agent_type=AgentType(row["agent_type"]),
            is_active=bool(row["is_active"]),
            total_commission_earned=row["total_commission_earned"],
            transaction_count=row["transaction_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _find_by_email(self, conn: sqlite3.Connection, email: str) -> Optional[sqlite3.Row]:
        cursor = conn.execute("SELECT * FROM agents WHERE email = ?", (email.strip().lower(),))
        return cursor.fetchone()

    def add_agent(
        self,
        email: str,
        first_name: str,
        last_name: str,
        phone: str = "",
        agent_type: AgentType = AgentType.BOTH,
    ) -> Agent:
        """Add a new agent. Emails are unique, compared case-insensitively."""
        if not email or not email.strip():
            raise ValidationError("Agent email is required")
        if not first_name or not last_name:
            raise ValidationError("Agent first and last name are required")

        now = datetime.now()
        agent = Agent(
            id=str(uuid.uuid4())[:12],
            email=email.strip().lower(),
            first_name=first_name,
            last_name=last_name,
            phone=phone,
            agent_type=agent_type,
            created_at=now,
            updated_at=now,
        )

        with self.db.connection() as conn:
            if self._find_by_email(conn, agent.email):
                raise ConflictError(f"Agent with email {agent.email} already exists")

            try:
                conn.execute("""
                    INSERT INTO agents (
                        id, email, first_name, last_name, phone, agent_type, is_active,
                        total_commission_earned, transaction_count, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 1, 0, 0, ?, ?)
                """, (
                    agent.id,
                    agent.email,
                    agent.first_name,
                    agent.last_name,
                    agent.phone,
                    agent.agent_type.value,
                    now.isoformat(),
                    now.isoformat(),
                ))
            except sqlite3.IntegrityError as e:
                # Another writer inserted the same email after our lookup
                raise ConflictError(f"Agent with email {agent.email} already exists") from e

        self.logger.info(f"Added agent {agent.id}: {agent.full_name} <{agent.email}>")
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        """Get an agent by ID."""
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        if not row:
            raise NotFoundError("Agent", agent_id)
        return self._row_to_agent(row)

    def get_agent_by_email(self, email: str) -> Agent:
        """Get an agent by email."""
        with self.db.connection() as conn:
            row = self._find_by_email(conn, email)
        if not row:
            raise NotFoundError("Agent", email)
        return self._row_to_agent(row)

    def exists(self, agent_id: str) -> bool:
        with self.db.connection() as conn:
            row = conn.execute("SELECT 1 FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return row is not None

    def update_agent(self, agent_id: str, **kwargs) -> Agent:
        """Update agent details.

        Only identity fields can be changed here. Commission totals move
        exclusively through credit_commission.
        """
        unknown = set(kwargs) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update agent field(s): {', '.join(sorted(unknown))}")

        agent = self.get_agent(agent_id)
        updates = []
        params: List[Any] = []

        with self.db.connection() as conn:
            email = kwargs.get("email")
            if email is not None:
                email = email.strip().lower()
                if not email:
                    raise ValidationError("Agent email is required")
                if email != agent.email:
                    existing = self._find_by_email(conn, email)
                    if existing and existing["id"] != agent_id:
                        raise ConflictError(f"Agent with email {email} already exists")
                updates.append("email = ?")
                params.append(email)

            for key in ("first_name", "last_name", "phone"):
                if kwargs.get(key) is not None:
                    updates.append(f"{key} = ?")
                    params.append(kwargs[key])

            if kwargs.get("agent_type") is not None:
                try:
                    agent_type = AgentType(kwargs["agent_type"])
                except ValueError as e:
                    raise ValidationError(f"Unknown agent type: {kwargs['agent_type']}") from e
                updates.append("agent_type = ?")
                params.append(agent_type.value)

            if updates:
                updates.append("updated_at = ?")
                params.append(datetime.now().isoformat())
                params.append(agent_id)
                try:
                    conn.execute(f"UPDATE agents SET {', '.join(updates)} WHERE id = ?", params)
                except sqlite3.IntegrityError as e:
                    raise ConflictError(f"Agent with email {email} already exists") from e

        return self.get_agent(agent_id)

    def _set_active(self, agent_id: str, active: bool) -> Agent:
        with self.db.connection() as conn:
            cursor = conn.execute(
                "UPDATE agents SET is_active = ?, updated_at = ? WHERE id = ?",
                (1 if active else 0, datetime.now().isoformat(), agent_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Agent", agent_id)
        return self.get_agent(agent_id)

    def deactivate(self, agent_id: str) -> Agent:
        """Deactivate an agent. Agents are never deleted."""
        return self._set_active(agent_id, False)

    def activate(self, agent_id: str) -> Agent:
        """Reactivate an agent."""
        return self._set_active(agent_id, True)

    def credit_commission(self, agent_id: str, amount: float) -> None:
        """Add a commission credit to an agent's running totals.

        Increments total_commission_earned by amount and transaction_count by
        one as a single in-place UPDATE, so concurrent credits from different
        transactions cannot lose each other.
        """
        if amount is None or not math.isfinite(amount) or amount <= 0:
            raise ValidationError(f"Commission credit must be positive, got {amount}")

        with self.db.connection() as conn:
            cursor = conn.execute("""
                UPDATE agents SET
                    total_commission_earned = total_commission_earned + ?,
                    transaction_count = transaction_count + 1,
                    updated_at = ?
                WHERE id = ?
            """, (amount, datetime.now().isoformat(), agent_id))
            if cursor.rowcount == 0:
                raise NotFoundError("Agent", agent_id)

        self.logger.info(f"Credited agent {agent_id} with {amount:.2f}")

    def get_active_agents(self) -> List[Agent]:
        """Get all active agents, highest earners first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM agents WHERE is_active = 1 ORDER BY total_commission_earned DESC"
            ).fetchall()
        return [self._row_to_agent(r) for r in rows]

    def get_agents_by_type(self, agent_type: AgentType) -> List[Agent]:
        """Get active agents of a given type."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM agents WHERE agent_type = ? AND is_active = 1 ORDER BY last_name, first_name",
                (agent_type.value,),
            ).fetchall()
        return [self._row_to_agent(r) for r in rows]

    def get_top_performers(self, limit: int = 10) -> List[Agent]:
        """Get the highest-earning active agents."""
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM agents WHERE is_active = 1 ORDER BY total_commission_earned DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_agent(r) for r in rows]

    def get_agent_stats(self, agent_id: str) -> Dict[str, Any]:
        """Get statistics for an agent."""
        agent = self.get_agent(agent_id)

        return {
            'id': agent.id,
            'name': agent.full_name,
            'email': agent.email,
            'type': agent.agent_type.value,
            'total_commission_earned': round(agent.total_commission_earned, 2),
            'transaction_count': agent.transaction_count,
            'average_commission_per_transaction': round(agent.average_commission_per_transaction, 2),
            'is_active': agent.is_active,
        }
