"""
Credit Ledger
Per-user credit balances. One credit pays for one newly started analysis.

Backends:
- sqlite (default): local file, atomic conditional debit
- supabase: the hosted `user_credit` table
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class InsufficientFunds(Exception):
    def __init__(self, balance: int, required: int):
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits: has {balance}, needs {required}")


class BaseCreditLedger:
    """Interface shared by every ledger backend"""

    def get_balance(self, user_id: str) -> int:
        """Current balance; users without a record have 0"""
        raise NotImplementedError

    def debit(self, user_id: str, amount: int = 1) -> int:
        """Subtract credits and return the new balance, or raise InsufficientFunds"""
        raise NotImplementedError

    def add(self, user_id: str, amount: int) -> int:
        """Add credits and return the new balance"""
        raise NotImplementedError

    def has_enough(self, user_id: str, required: int = 1) -> bool:
        return self.get_balance(user_id) >= required

    @staticmethod
    def _check_args(user_id: str, amount: int):
        if not user_id or not isinstance(amount, int) or amount <= 0:
            raise ValueError("Invalid user ID or amount")


class SQLiteCreditLedger(BaseCreditLedger):
    """Ledger kept in a local SQLite file"""

    def __init__(self, db_file: Path = None):
        if db_file is None:
            db_file = Path("cache/credits.db")
        self.db_file = Path(db_file)
        self.db_file.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        conn = sqlite3.connect(self.db_file)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_credit (
                user_id TEXT PRIMARY KEY,
                credit INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        conn.commit()
        conn.close()

    def get_balance(self, user_id: str) -> int:
        conn = sqlite3.connect(self.db_file, timeout=30)
        row = conn.execute("SELECT credit FROM user_credit WHERE user_id = ?", (user_id,)).fetchone()
        conn.close()
        return int(row[0]) if row else 0

    def debit(self, user_id: str, amount: int = 1) -> int:
        self._check_args(user_id, amount)

        conn = sqlite3.connect(self.db_file, timeout=30)
        try:
            with conn:
                # Conditional update keeps check and subtract in one statement
                cursor = conn.execute(
                    "UPDATE user_credit SET credit = credit - ? WHERE user_id = ? AND credit >= ?",
                    (amount, user_id, amount)
                )
                if cursor.rowcount == 0:
                    row = conn.execute(
                        "SELECT credit FROM user_credit WHERE user_id = ?", (user_id,)
                    ).fetchone()
                    balance = int(row[0]) if row else 0
                    logger.info("Insufficient credits for user %s: has %d, needs %d",
                                user_id, balance, amount)
                    raise InsufficientFunds(balance, amount)
                new_balance = conn.execute(
                    "SELECT credit FROM user_credit WHERE user_id = ?", (user_id,)
                ).fetchone()[0]
        finally:
            conn.close()

        logger.info("Debited %d credit(s) from user %s, new balance: %d", amount, user_id, new_balance)
        return int(new_balance)

    def add(self, user_id: str, amount: int) -> int:
        self._check_args(user_id, amount)

        conn = sqlite3.connect(self.db_file, timeout=30)
        try:
            with conn:
                conn.execute("""
                    INSERT INTO user_credit (user_id, credit) VALUES (?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET credit = credit + excluded.credit
                """, (user_id, amount))
                new_balance = conn.execute(
                    "SELECT credit FROM user_credit WHERE user_id = ?", (user_id,)
                ).fetchone()[0]
        finally:
            conn.close()

        logger.info("Added %d credit(s) to user %s, new balance: %d", amount, user_id, new_balance)
        return int(new_balance)


class SupabaseCreditLedger(BaseCreditLedger):
    """Ledger stored in the Supabase `user_credit` table"""

    TABLE = "user_credit"
    MAX_DEBIT_ATTEMPTS = 3

    def __init__(self, url: str, key: str, client=None):
        if client is None:
            if not url or not key:
                raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set for the supabase ledger")
            from supabase import create_client
            client = create_client(url, key)
        self._client = client

    def _table(self):
        return self._client.table(self.TABLE)

    def get_balance(self, user_id: str) -> int:
        resp = self._table().select("credit").eq("user_id", user_id).limit(1).execute()
        if not resp.data:
            return 0
        return int(resp.data[0].get("credit") or 0)

    def debit(self, user_id: str, amount: int = 1) -> int:
        self._check_args(user_id, amount)

        for _ in range(self.MAX_DEBIT_ATTEMPTS):
            current = self.get_balance(user_id)
            if current < amount:
                logger.info("Insufficient credits for user %s: has %d, needs %d", user_id, current, amount)
                raise InsufficientFunds(current, amount)

            # Compare-and-set on the balance we read so a concurrent debit cannot go below zero
            resp = (
                self._table()
                .update({"credit": current - amount})
                .eq("user_id", user_id)
                .eq("credit", current)
                .execute()
            )
            if resp.data:
                new_balance = int(resp.data[0].get("credit") or 0)
                logger.info("Debited %d credit(s) from user %s, new balance: %d",
                            amount, user_id, new_balance)
                return new_balance

        raise RuntimeError(f"Could not debit user {user_id}: balance kept changing")

    def add(self, user_id: str, amount: int) -> int:
        self._check_args(user_id, amount)

        new_balance = self.get_balance(user_id) + amount
        resp = (
            self._table()
            .upsert(
                {
                    "user_id": user_id,
                    "credit": new_balance,
                    "created_at": datetime.now(timezone.utc).isoformat(),
                },
                on_conflict="user_id",
            )
            .execute()
        )
        if resp.data:
            new_balance = int(resp.data[0].get("credit") or new_balance)
        logger.info("Added %d credit(s) to user %s, new balance: %d", amount, user_id, new_balance)
        return new_balance


def get_credit_ledger(settings) -> BaseCreditLedger:
    """
    Get credit ledger based on settings.credit_backend

    - sqlite (default): local file at settings.credit_db_path
    - supabase: hosted table, needs SUPABASE_URL and SUPABASE_SERVICE_KEY
    """
    backend = settings.credit_backend

    if backend == 'sqlite':
        return SQLiteCreditLedger(settings.credit_db_path)

    elif backend == 'supabase':
        return SupabaseCreditLedger(settings.supabase_url, settings.supabase_service_key)

    else:
        raise ValueError(
            f"Unknown credit backend: {backend}. "
            f"Valid options: sqlite, supabase"
        )
