"""SQLite-backed persistence for cursors, alerts, positions and swaps."""
from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from analysis.ledger import apply_delta
from analysis.models import LedgerEntry, SwapEvent
from storage.models import Subscriber

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def _serialize_list(values: Iterable[str]) -> str:
    return ",".join(sorted(set(values)))


def _deserialize_list(value: Optional[str]) -> list[str]:
    return [item for item in (value or "").split(",") if item]


def _now() -> str:
    return datetime.now(timezone.utc).strftime(ISO_FORMAT)


class SQLiteRepository:
    """Provides async-friendly helpers for persisting monitor state."""

    def __init__(self, db_path: Path | str = Path("data/kol_monitor.db")) -> None:
        self.db_path = Path(db_path)
        if self.db_path != Path(":memory:"):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._connection = sqlite3.connect(
            str(self.db_path),
            detect_types=sqlite3.PARSE_DECLTYPES,
            check_same_thread=False,
        )
        self._connection.row_factory = sqlite3.Row
        self._configure()
        self._create_schema()

    def _configure(self) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
            except sqlite3.DatabaseError:
                pass
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.close()

    def _create_schema(self) -> None:
        statements = [
            """
            CREATE TABLE IF NOT EXISTS account_cursor (
                account TEXT PRIMARY KEY,
                last_signature TEXT NOT NULL,
                last_timestamp INTEGER,
                updated_at TEXT NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS alerted_signature (
                signature TEXT PRIMARY KEY,
                account TEXT NOT NULL,
                token TEXT NOT NULL,
                alerted_at TEXT NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS ledger_entry (
                account TEXT NOT NULL,
                token TEXT NOT NULL,
                balance REAL NOT NULL DEFAULT 0,
                cost_basis REAL NOT NULL DEFAULT 0,
                total_tokens_bought REAL NOT NULL DEFAULT 0,
                first_buy_signature TEXT,
                first_buy_timestamp INTEGER,
                first_buy_price REAL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (account, token)
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS swap_history (
                signature TEXT PRIMARY KEY,
                account TEXT NOT NULL,
                token TEXT NOT NULL,
                swap_type TEXT NOT NULL,
                token_amount REAL NOT NULL,
                native_amount REAL NOT NULL,
                price REAL,
                market_cap REAL,
                timestamp INTEGER NOT NULL
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS subscriber (
                chat_id TEXT PRIMARY KEY,
                subscribed INTEGER NOT NULL DEFAULT 1,
                tracked_accounts TEXT NOT NULL DEFAULT '',
                tracked_tokens TEXT NOT NULL DEFAULT '',
                updated_at TEXT NOT NULL
            );
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_swap_history_account_token_time
                ON swap_history(account, token, timestamp);
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_ledger_entry_token
                ON ledger_entry(token);
            """,
        ]

        with self._lock:
            cursor = self._connection.cursor()
            for statement in statements:
                cursor.execute(statement)
            self._connection.commit()
            cursor.close()

    # Cursor

    async def get_cursor(self, account: str) -> Optional[str]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_cursor_sync, account)

    def _get_cursor_sync(self, account: str) -> Optional[str]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT last_signature FROM account_cursor WHERE account = ?", (account,))
            row = cursor.fetchone()
            cursor.close()
        return row["last_signature"] if row else None

    async def set_cursor(self, account: str, signature: str, timestamp: Optional[int] = None) -> bool:
        """Stores the newest processed signature.

        A signature older than the stored one (by block timestamp) is refused so
        the cursor never moves backward. Returns whether the cursor was written.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._set_cursor_sync, account, signature, timestamp)

    def _set_cursor_sync(self, account: str, signature: str, timestamp: Optional[int]) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO account_cursor (account, last_signature, last_timestamp, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account) DO UPDATE SET
                    last_signature = excluded.last_signature,
                    last_timestamp = excluded.last_timestamp,
                    updated_at = excluded.updated_at
                WHERE account_cursor.last_timestamp IS NULL
                    OR excluded.last_timestamp IS NULL
                    OR excluded.last_timestamp >= account_cursor.last_timestamp
                """,
                (account, signature, timestamp, _now()),
            )
            written = cursor.rowcount == 1
            self._connection.commit()
            cursor.close()
        return written

    # Alerted set

    async def has_alerted(self, signature: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._has_alerted_sync, signature)

    def _has_alerted_sync(self, signature: str) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT 1 FROM alerted_signature WHERE signature = ?", (signature,))
            row = cursor.fetchone()
            cursor.close()
        return row is not None

    async def mark_alerted(self, signatures: Iterable[str], account: str, token: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._mark_alerted_sync, list(signatures), account, token)

    def _mark_alerted_sync(self, signatures: list[str], account: str, token: str) -> None:
        alerted_at = _now()
        with self._lock:
            cursor = self._connection.cursor()
            cursor.executemany(
                """
                INSERT OR IGNORE INTO alerted_signature (signature, account, token, alerted_at)
                VALUES (?, ?, ?, ?)
                """,
                [(signature, account, token, alerted_at) for signature in signatures],
            )
            self._connection.commit()
            cursor.close()

    # Ledger

    async def get_ledger_entry(self, account: str, token: str) -> Optional[LedgerEntry]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_ledger_entry_sync, account, token)

    def _get_ledger_entry_sync(self, account: str, token: str) -> Optional[LedgerEntry]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "SELECT * FROM ledger_entry WHERE account = ? AND token = ?",
                (account, token),
            )
            row = cursor.fetchone()
            cursor.close()
        return self._row_to_ledger_entry(row) if row else None

    async def apply_ledger_delta(
        self,
        account: str,
        token: str,
        delta: float,
        *,
        signature: Optional[str] = None,
        is_first_buy: bool = False,
        price: Optional[float] = None,
        native_amount: Optional[float] = None,
        timestamp: Optional[int] = None,
    ) -> float:
        """Applies one signed token delta and returns the new balance."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None,
            self._apply_ledger_delta_sync,
            account,
            token,
            delta,
            signature,
            is_first_buy,
            price,
            native_amount,
            timestamp,
        )

    def _apply_ledger_delta_sync(
        self,
        account: str,
        token: str,
        delta: float,
        signature: Optional[str],
        is_first_buy: bool,
        price: Optional[float],
        native_amount: Optional[float],
        timestamp: Optional[int],
    ) -> float:
        with self._lock:
            cursor = self._connection.cursor()
            try:
                balance = self._write_ledger_delta(
                    cursor, account, token, delta, signature, is_first_buy, price, native_amount, timestamp,
                )
                self._connection.commit()
            except Exception:
                self._connection.rollback()
                raise
            finally:
                cursor.close()
        return balance

    def _write_ledger_delta(
        self,
        cursor: sqlite3.Cursor,
        account: str,
        token: str,
        delta: float,
        signature: Optional[str],
        is_first_buy: bool,
        price: Optional[float],
        native_amount: Optional[float],
        timestamp: Optional[int],
    ) -> float:
        """Upserts the ledger row inside the caller's transaction."""
        cursor.execute(
            "SELECT * FROM ledger_entry WHERE account = ? AND token = ?",
            (account, token),
        )
        row = cursor.fetchone()
        current = self._row_to_ledger_entry(row) if row else None
        updated = apply_delta(
            current,
            delta,
            native_amount=native_amount,
            signature=signature,
            is_first_buy=is_first_buy,
            price=price,
            timestamp=timestamp,
        )
        cursor.execute(
            """
            INSERT INTO ledger_entry (
                account,
                token,
                balance,
                cost_basis,
                total_tokens_bought,
                first_buy_signature,
                first_buy_timestamp,
                first_buy_price,
                updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account, token) DO UPDATE SET
                balance = excluded.balance,
                cost_basis = excluded.cost_basis,
                total_tokens_bought = excluded.total_tokens_bought,
                first_buy_signature = excluded.first_buy_signature,
                first_buy_timestamp = excluded.first_buy_timestamp,
                first_buy_price = excluded.first_buy_price,
                updated_at = excluded.updated_at
            """,
            (
                account,
                token,
                updated.balance,
                updated.cost_basis,
                updated.total_tokens_bought,
                updated.first_buy_signature,
                updated.first_buy_timestamp,
                updated.first_buy_price,
                _now(),
            ),
        )
        return updated.balance

    async def get_accounts_for_token(self, token: str) -> list[str]:
        """Accounts that have ever bought `token`."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_accounts_for_token_sync, token)

    def _get_accounts_for_token_sync(self, token: str) -> list[str]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT account FROM ledger_entry
                WHERE token = ? AND first_buy_signature IS NOT NULL
                ORDER BY first_buy_timestamp ASC
                """,
                (token,),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [row["account"] for row in rows]

    # Swap history

    async def record_swap(self, account: str, event: SwapEvent) -> bool:
        """Stores a swap once. Returns False when the signature is already known."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._record_swap_sync, account, event)

    def _record_swap_sync(self, account: str, event: SwapEvent) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            inserted = self._insert_swap_row(cursor, account, event)
            self._connection.commit()
            cursor.close()
        return inserted

    async def apply_swap(
        self,
        account: str,
        event: SwapEvent,
        *,
        is_first_buy: bool = False,
        price: Optional[float] = None,
    ) -> Optional[float]:
        """Records a swap and applies its ledger delta in one transaction.

        Returns the new balance, or None when the signature was already
        recorded. Nothing is written if either step fails.
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._apply_swap_sync, account, event, is_first_buy, price)

    def _apply_swap_sync(
        self, account: str, event: SwapEvent, is_first_buy: bool, price: Optional[float]
    ) -> Optional[float]:
        delta = event.token_amount if event.is_buy else -event.token_amount
        with self._lock:
            cursor = self._connection.cursor()
            try:
                if not self._insert_swap_row(cursor, account, event):
                    self._connection.rollback()
                    return None
                balance = self._write_ledger_delta(
                    cursor,
                    account,
                    event.token_id,
                    delta,
                    event.signature,
                    is_first_buy,
                    price,
                    event.native_amount,
                    event.timestamp,
                )
                self._connection.commit()
            except Exception:
                self._connection.rollback()
                raise
            finally:
                cursor.close()
        return balance

    @staticmethod
    def _insert_swap_row(cursor: sqlite3.Cursor, account: str, event: SwapEvent) -> bool:
        cursor.execute(
            """
            INSERT OR IGNORE INTO swap_history (
                signature,
                account,
                token,
                swap_type,
                token_amount,
                native_amount,
                price,
                market_cap,
                timestamp
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.signature,
                account,
                event.token_id,
                event.type,
                event.token_amount,
                event.native_amount,
                event.price,
                event.market_cap,
                event.timestamp,
            ),
        )
        return cursor.rowcount == 1

    async def has_swap(self, signature: str) -> bool:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._has_swap_sync, signature)

    def _has_swap_sync(self, signature: str) -> bool:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute("SELECT 1 FROM swap_history WHERE signature = ?", (signature,))
            row = cursor.fetchone()
            cursor.close()
        return row is not None

    async def get_swap_history(self, account: str, token: str, limit: int = 1000) -> list[SwapEvent]:
        """Chronological swaps of one token by one account."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_swap_history_sync, account, token, limit)

    def _get_swap_history_sync(self, account: str, token: str, limit: int) -> list[SwapEvent]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM (
                    SELECT * FROM swap_history
                    WHERE account = ? AND token = ?
                    ORDER BY timestamp DESC, rowid DESC
                    LIMIT ?
                ) ORDER BY timestamp ASC, rowid ASC
                """,
                (account, token, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._row_to_swap_event(row) for row in rows]

    async def get_account_history(self, account: str, limit: int = 1000) -> list[SwapEvent]:
        """Chronological swaps of every token by one account."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._get_account_history_sync, account, limit)

    def _get_account_history_sync(self, account: str, limit: int) -> list[SwapEvent]:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                SELECT * FROM (
                    SELECT * FROM swap_history
                    WHERE account = ?
                    ORDER BY timestamp DESC, rowid DESC
                    LIMIT ?
                ) ORDER BY timestamp ASC, rowid ASC
                """,
                (account, limit),
            )
            rows = cursor.fetchall()
            cursor.close()
        return [self._row_to_swap_event(row) for row in rows]

    # Subscribers

    async def upsert_subscriber(self, subscriber: Subscriber) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._upsert_subscriber_sync, subscriber)

    def _upsert_subscriber_sync(self, subscriber: Subscriber) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                """
                INSERT INTO subscriber (chat_id, subscribed, tracked_accounts, tracked_tokens, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(chat_id) DO UPDATE SET
                    subscribed = excluded.subscribed,
                    tracked_accounts = excluded.tracked_accounts,
                    tracked_tokens = excluded.tracked_tokens,
                    updated_at = excluded.updated_at
                """,
                (
                    subscriber.chat_id,
                    1 if subscriber.subscribed else 0,
                    _serialize_list(subscriber.tracked_accounts),
                    _serialize_list(subscriber.tracked_tokens),
                    _now(),
                ),
            )
            self._connection.commit()
            cursor.close()

    async def fetch_subscribers(self, active_only: bool = True) -> list[Subscriber]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._fetch_subscribers_sync, active_only)

    def _fetch_subscribers_sync(self, active_only: bool) -> list[Subscriber]:
        query = "SELECT * FROM subscriber"
        if active_only:
            query += " WHERE subscribed = 1"
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(query + " ORDER BY chat_id")
            rows = cursor.fetchall()
            cursor.close()
        return [
            Subscriber(
                chat_id=row["chat_id"],
                subscribed=bool(row["subscribed"]),
                tracked_accounts=_deserialize_list(row["tracked_accounts"]),
                tracked_tokens=_deserialize_list(row["tracked_tokens"]),
            )
            for row in rows
        ]

    async def deactivate_subscriber(self, chat_id: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._deactivate_subscriber_sync, chat_id)

    def _deactivate_subscriber_sync(self, chat_id: str) -> None:
        with self._lock:
            cursor = self._connection.cursor()
            cursor.execute(
                "UPDATE subscriber SET subscribed = 0, updated_at = ? WHERE chat_id = ?",
                (_now(), chat_id),
            )
            self._connection.commit()
            cursor.close()

    async def close(self) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._close_sync)

    def _close_sync(self) -> None:
        with self._lock:
            self._connection.commit()
            self._connection.close()

    @staticmethod
    def _row_to_ledger_entry(row: sqlite3.Row) -> LedgerEntry:
        return LedgerEntry(
            balance=row["balance"],
            cost_basis=row["cost_basis"],
            total_tokens_bought=row["total_tokens_bought"],
            first_buy_signature=row["first_buy_signature"],
            first_buy_timestamp=row["first_buy_timestamp"],
            first_buy_price=row["first_buy_price"],
        )

    @staticmethod
    def _row_to_swap_event(row: sqlite3.Row) -> SwapEvent:
        return SwapEvent(
            signature=row["signature"],
            timestamp=row["timestamp"],
            type=row["swap_type"],
            token_id=row["token"],
            token_amount=row["token_amount"],
            native_amount=row["native_amount"],
            price=row["price"],
            market_cap=row["market_cap"],
        )
