"""SQLite database shared by the agent registry, transaction tracker and ledger."""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Generator


DEFAULT_DB_PATH = Path.home() / ".td-commission-engine" / "commissions.db"


class Database:
    """SQLite file holding agents, transactions and commissions."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize database connection."""
        if db_path is None:
            db_path = DEFAULT_DB_PATH

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_db()

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema."""
        with self.connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS agents (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL UNIQUE,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    phone TEXT,
                    agent_type TEXT NOT NULL DEFAULT 'both',
                    is_active INTEGER NOT NULL DEFAULT 1,

                    total_commission_earned REAL NOT NULL DEFAULT 0,
                    transaction_count INTEGER NOT NULL DEFAULT 0,

                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS transactions (
                    id TEXT PRIMARY KEY,
                    property_address TEXT NOT NULL,
                    property_type TEXT NOT NULL,
                    total_service_fee REAL NOT NULL CHECK (total_service_fee > 0),
                    stage TEXT NOT NULL DEFAULT 'agreement',
                    listing_agent_id TEXT NOT NULL,
                    selling_agent_id TEXT NOT NULL,
                    client_name TEXT,
                    client_contact TEXT,

                    financial_breakdown_json TEXT,

                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS commissions (
                    id TEXT PRIMARY KEY,
                    transaction_id TEXT NOT NULL,
                    agent_id TEXT,
                    amount REAL NOT NULL CHECK (amount > 0),
                    commission_type TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    paid_date TIMESTAMP,
                    notes TEXT,

                    created_at TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
            """)

            cursor.execute("CREATE INDEX IF NOT EXISTS idx_agents_active ON agents(is_active)")
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_agents_earned ON agents(total_commission_earned DESC)"
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_stage ON transactions(stage)")
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_listing ON transactions(listing_agent_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_transactions_selling ON transactions(selling_agent_id)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_commissions_transaction ON commissions(transaction_id)"
            )
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_commissions_agent ON commissions(agent_id)")
            cursor.execute("CREATE INDEX IF NOT EXISTS idx_commissions_status ON commissions(status)")
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_commissions_created ON commissions(created_at DESC)"
            )
