"""
Database module for the wallet store.
Uses SQLite for wallet buckets, the transaction ledger, round history and
idempotency keys. This is the server-authoritative side of every balance.
"""

import sqlite3
from pathlib import Path
from typing import Optional, List, Dict
from datetime import datetime
import threading
import uuid

from app.core.exceptions import InsufficientFundsError, WalletNotFoundError
from app.core.logger import get_logger
from app.config import settings

# Get logger for this module
logger = get_logger("database")

BUCKETS = ("main_balance", "game_balance")

INCREMENT = "increment"
DECREMENT = "decrement"


class Database:
    """Thread-safe SQLite wallet store."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else settings.paths.get_db_path()
        self._local = threading.local()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        logger.info(f"Initializing database at {self.path}")
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        if getattr(self._local, "connection", None) is None:
            self._local.connection = sqlite3.connect(
                str(self.path), check_same_thread=False, timeout=5.0
            )
            self._local.connection.row_factory = sqlite3.Row
        return self._local.connection

    def _init_db(self):
        conn = self._get_connection()
        cursor = conn.cursor()

        # One wallet per player, one column per bucket
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS wallets (
                user_id TEXT PRIMARY KEY,
                main_balance REAL NOT NULL DEFAULT 0,
                game_balance REAL NOT NULL DEFAULT 0,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                updated_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                type TEXT NOT NULL,
                game TEXT,
                amount REAL NOT NULL,
                balance_after REAL NOT NULL,
                description TEXT,
                round_id TEXT,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES wallets(user_id)
            )
        """
        )

        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS game_history (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                round_id TEXT UNIQUE NOT NULL,
                user_id TEXT NOT NULL,
                game_id TEXT NOT NULL,
                bet REAL NOT NULL,
                payout REAL NOT NULL,
                multiplier REAL NOT NULL,
                outcome_value REAL NOT NULL,
                outcome_label TEXT NOT NULL,
                is_win INTEGER NOT NULL,
                selection TEXT,
                server_seed TEXT,
                server_seed_hash TEXT,
                client_seed TEXT,
                nonce INTEGER,
                created_at TEXT NOT NULL,
                FOREIGN KEY (user_id) REFERENCES wallets(user_id)
            )
        """
        )

        cursor.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_game_history_user_game
            ON game_history (user_id, game_id, id)
        """
        )

        # Keys of balance adjustments already applied
        cursor.execute(
            """
            CREATE TABLE IF NOT EXISTS idempotency_keys (
                key TEXT PRIMARY KEY,
                created_at TEXT DEFAULT CURRENT_TIMESTAMP
            )
        """
        )

        conn.commit()

    # ==================== Wallets ====================

    def create_wallet(
        self,
        user_id: str = None,
        main_balance: float = None,
        game_balance: float = None,
    ) -> Dict:
        """Open a wallet with the configured starting balances."""
        user_id = user_id or uuid.uuid4().hex
        if main_balance is None:
            main_balance = settings.wallet.starting_main_balance
        if game_balance is None:
            game_balance = settings.wallet.starting_game_balance

        conn = self._get_connection()
        with conn:
            conn.execute(
                """
                INSERT INTO wallets (user_id, main_balance, game_balance)
                VALUES (?, ?, ?)
            """,
                (user_id, main_balance, game_balance),
            )

        logger.info(f"Wallet created for {user_id}")
        return self.get_wallet(user_id)

    def get_wallet(self, user_id: str) -> Dict:
        """Get a wallet row. Raises WalletNotFoundError."""
        cursor = self._get_connection().cursor()
        cursor.execute(
            "SELECT user_id, main_balance, game_balance, updated_at FROM wallets WHERE user_id = ?",
            (user_id,),
        )
        row = cursor.fetchone()
        if not row:
            raise WalletNotFoundError(f"Wallet not found for {user_id}")
        return dict(row)

    def adjust_balance(
        self,
        user_id: str,
        amount: float,
        direction: str,
        bucket: str,
        idempotency_key: str = None,
    ) -> Dict:
        """
        Increment or decrement one wallet bucket atomically.

        A decrement never drives the bucket below zero; it raises
        InsufficientFundsError instead. When an idempotency key is given and
        has already been applied, nothing changes and the current wallet is
        returned.
        """
        if bucket not in BUCKETS:
            raise ValueError(f"Unknown wallet bucket: {bucket}")
        if direction not in (INCREMENT, DECREMENT):
            raise ValueError(f"Unknown direction: {direction}")
        if amount < 0:
            raise ValueError("Amount must not be negative")

        conn = self._get_connection()
        with conn:
            if idempotency_key:
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO idempotency_keys (key) VALUES (?)",
                    (idempotency_key,),
                )
                if cursor.rowcount == 0:
                    logger.info(f"Replayed adjustment ignored: {idempotency_key}")
                    return self.get_wallet(user_id)

            delta = amount if direction == INCREMENT else -amount
            # Funds check and update in one statement
            cursor = conn.execute(
                f"""
                UPDATE wallets SET {bucket} = {bucket} + ?, updated_at = ?
                WHERE user_id = ? AND {bucket} + ? >= -1e-9
            """,
                (delta, datetime.now().isoformat(), user_id, delta),
            )
            if cursor.rowcount == 0:
                row = conn.execute(
                    f"SELECT {bucket} FROM wallets WHERE user_id = ?", (user_id,)
                ).fetchone()
                if row is None:
                    raise WalletNotFoundError(f"Wallet not found for {user_id}")
                raise InsufficientFundsError(
                    f"{bucket} has {row[0]:.2f}, cannot take {amount:.2f}"
                )

        return self.get_wallet(user_id)

    # ==================== Ledger ====================

    def record_transaction(
        self,
        user_id: str,
        tx_type: str,
        amount: float,
        balance_after: float,
        game: str = None,
        description: str = None,
        round_id: str = None,
    ) -> int:
        """Log a transaction. Returns its id."""
        conn = self._get_connection()
        with conn:
            cursor = conn.execute(
                """
                INSERT INTO transactions (user_id, type, game, amount, balance_after, description, round_id)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
                (user_id, tx_type, game, amount, balance_after, description, round_id),
            )
        return cursor.lastrowid

    def get_transactions(self, user_id: str, limit: int = 50) -> List[Dict]:
        """Get recent transactions."""
        cursor = self._get_connection().cursor()
        cursor.execute(
            """
            SELECT * FROM transactions WHERE user_id = ?
            ORDER BY id DESC LIMIT ?
        """,
            (user_id, limit),
        )
        return [dict(row) for row in cursor.fetchall()]

    # ==================== Round History ====================

    def record_round(self, entry: Dict):
        """Insert a settled round. Re-recording the same round_id is a no-op."""
        conn = self._get_connection()
        with conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO game_history (
                    round_id, user_id, game_id, bet, payout, multiplier,
                    outcome_value, outcome_label, is_win, selection,
                    server_seed, server_seed_hash, client_seed, nonce, created_at
                ) VALUES (
                    :round_id, :user_id, :game_id, :bet, :payout, :multiplier,
                    :outcome_value, :outcome_label, :is_win, :selection,
                    :server_seed, :server_seed_hash, :client_seed, :nonce, :created_at
                )
            """,
                {
                    "selection": None,
                    "server_seed": None,
                    "server_seed_hash": None,
                    "client_seed": None,
                    "nonce": None,
                    "created_at": datetime.now().isoformat(),
                    **entry,
                    "is_win": 1 if entry.get("is_win") else 0,
                },
            )

    def list_recent_rounds(self, user_id: str, game_id: str, limit: int = 10) -> List[Dict]:
        """Most recent rounds first."""
        cursor = self._get_connection().cursor()
        cursor.execute(
            """
            SELECT * FROM game_history WHERE user_id = ? AND game_id = ?
            ORDER BY id DESC LIMIT ?
        """,
            (user_id, game_id, limit),
        )
        rows = []
        for row in cursor.fetchall():
            data = dict(row)
            data["is_win"] = bool(data["is_win"])
            rows.append(data)
        return rows

    # ==================== Idempotency ====================

    def is_key_used(self, key: str) -> bool:
        cursor = self._get_connection().cursor()
        cursor.execute("SELECT 1 FROM idempotency_keys WHERE key = ?", (key,))
        return cursor.fetchone() is not None

    def mark_key_as_used(self, key: str) -> bool:
        """Claim a key. Returns False if it was already claimed."""
        conn = self._get_connection()
        with conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO idempotency_keys (key) VALUES (?)", (key,)
            )
        return cursor.rowcount == 1


# Singleton instance
db = Database()
