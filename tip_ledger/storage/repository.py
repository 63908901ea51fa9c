"""
Repository pattern for data access.

Handles schema creation and every read and write against the ledger
and verification stores. Methods that take a ``conn`` argument run
inside a caller-owned write transaction; all others open their own
connection.
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple
from uuid import uuid4

from .db import DEFAULT_BUSY_TIMEOUT, get_connection, write_transaction
from .models import (
    Account,
    BalanceField,
    ContentItem,
    EscrowHistoryItem,
    EscrowSource,
    EscrowStatus,
    LedgerEntry,
    OwnershipShare,
    PendingAllocation,
    Tip,
    TipStatus,
    TransactionType,
    VerificationRecord,
    VerificationStatus,
)


LEDGER_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS accounts (
        user_id TEXT PRIMARY KEY,
        username TEXT NOT NULL,
        spendable_balance INTEGER NOT NULL DEFAULT 0 CHECK (spendable_balance >= 0),
        tip_aggregate INTEGER NOT NULL DEFAULT 0 CHECK (tip_aggregate >= 0),
        escrow_balance INTEGER NOT NULL DEFAULT 0 CHECK (escrow_balance >= 0),
        bonus_balance INTEGER NOT NULL DEFAULT 0 CHECK (bonus_balance >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content_items (
        content_id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        tip_aggregate INTEGER NOT NULL DEFAULT 0 CHECK (tip_aggregate >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS content_owners (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        content_id TEXT NOT NULL REFERENCES content_items(content_id),
        payee_name TEXT NOT NULL,
        percentage TEXT NOT NULL,
        user_id TEXT,
        channel_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        session_id TEXT PRIMARY KEY,
        name TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tips (
        tip_id TEXT PRIMARY KEY,
        actor_id TEXT NOT NULL REFERENCES accounts(user_id),
        content_id TEXT NOT NULL REFERENCES content_items(content_id),
        session_id TEXT,
        amount INTEGER NOT NULL CHECK (amount > 0),
        status TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_tips_status ON tips(status)",
    """
    CREATE TABLE IF NOT EXISTS ledger_entries (
        sequence INTEGER PRIMARY KEY AUTOINCREMENT,
        entry_id TEXT NOT NULL UNIQUE,
        transaction_type TEXT NOT NULL,
        actor_id TEXT NOT NULL,
        content_id TEXT,
        session_id TEXT,
        amount INTEGER NOT NULL CHECK (amount >= 0),
        user_balance_pre INTEGER NOT NULL,
        user_balance_post INTEGER NOT NULL,
        user_aggregate_pre INTEGER NOT NULL,
        user_aggregate_post INTEGER NOT NULL,
        content_aggregate_pre INTEGER,
        content_aggregate_post INTEGER,
        global_aggregate_pre INTEGER NOT NULL,
        global_aggregate_post INTEGER NOT NULL,
        reference_id TEXT,
        reference_type TEXT,
        username TEXT,
        content_title TEXT,
        session_name TEXT,
        description TEXT,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ledger_actor ON ledger_entries(actor_id, sequence)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_content ON ledger_entries(content_id, sequence)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_type ON ledger_entries(transaction_type, sequence)",
    "CREATE INDEX IF NOT EXISTS idx_ledger_created ON ledger_entries(created_at)",
    # One TOP_UP per external payment reference
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_ledger_settlement
    ON ledger_entries(reference_id) WHERE transaction_type = 'TOP_UP'
    """,
    """
    CREATE TABLE IF NOT EXISTS pending_allocations (
        allocation_id TEXT PRIMARY KEY,
        tip_id TEXT NOT NULL,
        content_id TEXT NOT NULL,
        payee_name TEXT NOT NULL,
        match_key TEXT NOT NULL,
        channel_id TEXT,
        percentage TEXT NOT NULL,
        amount INTEGER NOT NULL CHECK (amount > 0),
        claimed INTEGER NOT NULL DEFAULT 0,
        claimed_by TEXT,
        claimed_at TEXT,
        allocated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_pending_match ON pending_allocations(match_key, claimed)",
    "CREATE INDEX IF NOT EXISTS idx_pending_channel ON pending_allocations(channel_id, claimed)",
    """
    CREATE TABLE IF NOT EXISTS escrow_history (
        history_id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL REFERENCES accounts(user_id),
        tip_id TEXT NOT NULL,
        content_id TEXT NOT NULL,
        amount INTEGER NOT NULL CHECK (amount > 0),
        claimed_amount INTEGER NOT NULL DEFAULT 0,
        status TEXT NOT NULL,
        source TEXT NOT NULL,
        allocated_at TEXT NOT NULL,
        claimed_at TEXT,
        payout_reference TEXT,
        CHECK (claimed_amount >= 0 AND claimed_amount <= amount)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_escrow_user ON escrow_history(user_id, status, allocated_at)",
]

VERIFICATION_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS verification_records (
        record_id TEXT PRIMARY KEY,
        entry_id TEXT NOT NULL UNIQUE,
        entry_sequence INTEGER NOT NULL,
        transaction_type TEXT NOT NULL,
        original_hash TEXT NOT NULL,
        last_observed_hash TEXT,
        status TEXT NOT NULL,
        verification_count INTEGER NOT NULL DEFAULT 0,
        mismatch_count INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL,
        last_verified_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_verification_status ON verification_records(status, last_verified_at)",
    "CREATE INDEX IF NOT EXISTS idx_verification_mismatches ON verification_records(mismatch_count)",
    # original_hash is write-once
    """
    CREATE TRIGGER IF NOT EXISTS trg_verification_original_hash_immutable
    BEFORE UPDATE OF original_hash ON verification_records
    BEGIN
        SELECT RAISE(ABORT, 'original_hash is write-once');
    END
    """,
]

ENTRY_COLUMNS = (
    "sequence, entry_id, transaction_type, actor_id, content_id, session_id, amount, "
    "user_balance_pre, user_balance_post, user_aggregate_pre, user_aggregate_post, "
    "content_aggregate_pre, content_aggregate_post, global_aggregate_pre, global_aggregate_post, "
    "reference_id, reference_type, username, content_title, session_name, description, "
    "metadata, created_at"
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _run_schema(db_path: str, statements: List[str]) -> None:
    conn = get_connection(db_path)
    try:
        for statement in statements:
            conn.execute(statement)
    finally:
        conn.close()


def initialize_schema(db_path: str = "tip_ledger.db") -> None:
    """Create the ledger tables if they don't exist.

    ledger_entries is an append-only table: the library never issues
    UPDATE or DELETE against it.

    Args:
        db_path: Path to SQLite database file
    """
    _run_schema(db_path, LEDGER_SCHEMA)


def initialize_verification_schema(db_path: str = "tip_ledger_verification.db") -> None:
    """Create the verification_records table if it doesn't exist.

    Args:
        db_path: Path to SQLite database file, normally distinct from the ledger's
    """
    _run_schema(db_path, VERIFICATION_SCHEMA)


def row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["entry_id"],
        sequence=row["sequence"],
        transaction_type=TransactionType(row["transaction_type"]),
        actor_id=row["actor_id"],
        amount=row["amount"],
        user_balance_pre=row["user_balance_pre"],
        user_balance_post=row["user_balance_post"],
        user_aggregate_pre=row["user_aggregate_pre"],
        user_aggregate_post=row["user_aggregate_post"],
        global_aggregate_pre=row["global_aggregate_pre"],
        global_aggregate_post=row["global_aggregate_post"],
        created_at=_dt(row["created_at"]),
        content_id=row["content_id"],
        session_id=row["session_id"],
        content_aggregate_pre=row["content_aggregate_pre"],
        content_aggregate_post=row["content_aggregate_post"],
        reference_id=row["reference_id"],
        reference_type=row["reference_type"],
        username=row["username"],
        content_title=row["content_title"],
        session_name=row["session_name"],
        description=row["description"],
        metadata=json.loads(row["metadata"] or "{}"),
    )


def _row_to_account(row: sqlite3.Row) -> Account:
    return Account(
        user_id=row["user_id"],
        username=row["username"],
        spendable_balance=row["spendable_balance"],
        tip_aggregate=row["tip_aggregate"],
        escrow_balance=row["escrow_balance"],
        bonus_balance=row["bonus_balance"],
    )


def _row_to_tip(row: sqlite3.Row) -> Tip:
    return Tip(
        tip_id=row["tip_id"],
        actor_id=row["actor_id"],
        content_id=row["content_id"],
        amount=row["amount"],
        status=TipStatus(row["status"]),
        created_at=_dt(row["created_at"]),
        session_id=row["session_id"],
    )


def _row_to_pending(row: sqlite3.Row) -> PendingAllocation:
    return PendingAllocation(
        allocation_id=row["allocation_id"],
        tip_id=row["tip_id"],
        content_id=row["content_id"],
        payee_name=row["payee_name"],
        match_key=row["match_key"],
        percentage=float(row["percentage"]),
        amount=row["amount"],
        allocated_at=_dt(row["allocated_at"]),
        channel_id=row["channel_id"],
        claimed=bool(row["claimed"]),
        claimed_by=row["claimed_by"],
        claimed_at=_dt(row["claimed_at"]),
    )


def _row_to_escrow(row: sqlite3.Row) -> EscrowHistoryItem:
    return EscrowHistoryItem(
        history_id=row["history_id"],
        user_id=row["user_id"],
        tip_id=row["tip_id"],
        content_id=row["content_id"],
        amount=row["amount"],
        claimed_amount=row["claimed_amount"],
        status=EscrowStatus(row["status"]),
        source=EscrowSource(row["source"]),
        allocated_at=_dt(row["allocated_at"]),
        claimed_at=_dt(row["claimed_at"]),
        payout_reference=row["payout_reference"],
    )


def _row_to_verification(row: sqlite3.Row) -> VerificationRecord:
    return VerificationRecord(
        record_id=row["record_id"],
        entry_id=row["entry_id"],
        entry_sequence=row["entry_sequence"],
        transaction_type=TransactionType(row["transaction_type"]),
        original_hash=row["original_hash"],
        status=VerificationStatus(row["status"]),
        created_at=_dt(row["created_at"]),
        last_observed_hash=row["last_observed_hash"],
        verification_count=row["verification_count"],
        mismatch_count=row["mismatch_count"],
        last_verified_at=_dt(row["last_verified_at"]),
    )


class LedgerRepository:
    """Repository for the ledger store.

    Only the ledger and escrow services may call the ``conn``-taking
    mutation methods; nothing else writes balance fields.
    """

    def __init__(self, db_path: str = "tip_ledger.db", timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.timeout = timeout

    def transaction(self):
        """Open a write transaction holding the database write lock."""
        return write_transaction(self.db_path, self.timeout)

    def _read(self, query: str, params: Any = ()) -> List[sqlite3.Row]:
        conn = get_connection(self.db_path, self.timeout)
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Directory (collaborator-owned data mirrored locally)
    # ------------------------------------------------------------------

    def upsert_account(self, user_id: str, username: str) -> Account:
        """Register an account or rename it. Balances are never touched here."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO accounts (user_id, username) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET username = excluded.username
                """,
                (user_id, username),
            )
            return self.get_account_in(conn, user_id)

    def upsert_content(self, content_id: str, title: str, owners: List[OwnershipShare]) -> ContentItem:
        """Register a content item and replace its ownership shares."""
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO content_items (content_id, title) VALUES (?, ?)
                ON CONFLICT(content_id) DO UPDATE SET title = excluded.title
                """,
                (content_id, title),
            )
            conn.execute("DELETE FROM content_owners WHERE content_id = ?", (content_id,))
            conn.executemany(
                """
                INSERT INTO content_owners (content_id, payee_name, percentage, user_id, channel_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (content_id, o.payee_name, str(o.percentage), o.user_id, o.channel_id)
                    for o in owners
                ],
            )
            return self.get_content_in(conn, content_id)

    def upsert_session(self, session_id: str, name: str) -> None:
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO sessions (session_id, name) VALUES (?, ?)
                ON CONFLICT(session_id) DO UPDATE SET name = excluded.name
                """,
                (session_id, name),
            )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_account(self, user_id: str) -> Optional[Account]:
        rows = self._read("SELECT * FROM accounts WHERE user_id = ?", (user_id,))
        return _row_to_account(rows[0]) if rows else None

    def list_accounts(self) -> List[Account]:
        return [_row_to_account(r) for r in self._read("SELECT * FROM accounts ORDER BY user_id")]

    def get_content(self, content_id: str) -> Optional[ContentItem]:
        conn = get_connection(self.db_path, self.timeout)
        try:
            return self.get_content_in(conn, content_id)
        finally:
            conn.close()

    def get_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        rows = self._read(f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE entry_id = ?", (entry_id,))
        return row_to_entry(rows[0]) if rows else None

    def get_entries_for_actor(self, user_id: str, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
        """Actor's entries, newest first."""
        rows = self._read(
            f"""
            SELECT {ENTRY_COLUMNS} FROM ledger_entries
            WHERE actor_id = ? ORDER BY sequence DESC LIMIT ? OFFSET ?
            """,
            (user_id, limit, offset),
        )
        return [row_to_entry(r) for r in rows]

    def existing_entry_ids(self, entry_ids: List[str]) -> Set[str]:
        """Subset of ``entry_ids`` that still exist in the ledger."""
        if not entry_ids:
            return set()
        placeholders = ", ".join("?" for _ in entry_ids)
        rows = self._read(
            f"SELECT entry_id FROM ledger_entries WHERE entry_id IN ({placeholders})", entry_ids
        )
        return {r[0] for r in rows}

    def count_entries_for_actor(self, user_id: str) -> int:
        return self._read("SELECT COUNT(*) FROM ledger_entries WHERE actor_id = ?", (user_id,))[0][0]

    def get_entries_for_content(self, content_id: str, limit: int = 50, offset: int = 0) -> List[LedgerEntry]:
        """Entries against a content item, newest first."""
        rows = self._read(
            f"""
            SELECT {ENTRY_COLUMNS} FROM ledger_entries
            WHERE content_id = ? ORDER BY sequence DESC LIMIT ? OFFSET ?
            """,
            (content_id, limit, offset),
        )
        return [row_to_entry(r) for r in rows]

    def count_entries_for_content(self, content_id: str) -> int:
        return self._read("SELECT COUNT(*) FROM ledger_entries WHERE content_id = ?", (content_id,))[0][0]

    def get_entry_row(self, entry_id: str) -> Optional[sqlite3.Row]:
        """Stored columns of one entry, undecoded."""
        rows = self._read(f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE entry_id = ?", (entry_id,))
        return rows[0] if rows else None

    def get_entry_rows_page(
        self,
        after_sequence: int = 0,
        limit: int = 500,
        transaction_type: Optional[TransactionType] = None,
    ) -> List[sqlite3.Row]:
        """Like get_entries_page, but rows are returned as stored.

        Used by sweeps that must survive rows edited into an undecodable state.
        """
        query = f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE sequence > ?"
        params: List[Any] = [after_sequence]
        if transaction_type is not None:
            query += " AND transaction_type = ?"
            params.append(transaction_type.value)
        query += " ORDER BY sequence ASC LIMIT ?"
        params.append(limit)
        return self._read(query, params)

    def iter_entry_rows(self, page_size: int = 500) -> Iterator[sqlite3.Row]:
        after = 0
        while True:
            page = self.get_entry_rows_page(after_sequence=after, limit=page_size)
            if not page:
                return
            yield from page
            after = page[-1]["sequence"]

    def entry_counts_by_type(self) -> Dict[str, Dict[str, int]]:
        rows = self._read(
            """
            SELECT transaction_type, COUNT(*), COALESCE(SUM(amount), 0)
            FROM ledger_entries GROUP BY transaction_type
            """
        )
        return {r[0]: {"count": r[1], "volume": r[2]} for r in rows}

    def sequence_range(self) -> Tuple[int, int]:
        row = self._read("SELECT COALESCE(MIN(sequence), 0), COALESCE(MAX(sequence), 0) FROM ledger_entries")[0]
        return row[0], row[1]

    def count_entries_since(self, since: datetime) -> int:
        return self._read(
            "SELECT COUNT(*) FROM ledger_entries WHERE created_at >= ?", (_iso(since),)
        )[0][0]

    def get_entries_page(
        self,
        after_sequence: int = 0,
        limit: int = 500,
        transaction_type: Optional[TransactionType] = None,
    ) -> List[LedgerEntry]:
        """Keyset page of entries in insert order, starting after ``after_sequence``."""
        query = f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE sequence > ?"
        params: List[Any] = [after_sequence]
        if transaction_type is not None:
            query += " AND transaction_type = ?"
            params.append(transaction_type.value)
        query += " ORDER BY sequence ASC LIMIT ?"
        params.append(limit)
        return [row_to_entry(r) for r in self._read(query, params)]

    def iter_entries(self, page_size: int = 500) -> Iterator[LedgerEntry]:
        after = 0
        while True:
            page = self.get_entries_page(after_sequence=after, limit=page_size)
            if not page:
                return
            yield from page
            after = page[-1].sequence

    def find_top_up(self, provider_reference: str) -> Optional[LedgerEntry]:
        conn = get_connection(self.db_path, self.timeout)
        try:
            return self.find_top_up_in(conn, provider_reference)
        finally:
            conn.close()

    def get_tip(self, tip_id: str) -> Optional[Tip]:
        rows = self._read("SELECT * FROM tips WHERE tip_id = ?", (tip_id,))
        return _row_to_tip(rows[0]) if rows else None

    def global_aggregate(self) -> int:
        conn = get_connection(self.db_path, self.timeout)
        try:
            return self.active_tip_total(conn)
        finally:
            conn.close()

    def get_escrow_history(self, user_id: str) -> List[EscrowHistoryItem]:
        rows = self._read(
            "SELECT * FROM escrow_history WHERE user_id = ? ORDER BY allocated_at, history_id",
            (user_id,),
        )
        return [_row_to_escrow(r) for r in rows]

    def get_pending_allocations(self, claimed: Optional[bool] = None) -> List[PendingAllocation]:
        query = "SELECT * FROM pending_allocations"
        params: List[Any] = []
        if claimed is not None:
            query += " WHERE claimed = ?"
            params.append(int(claimed))
        query += " ORDER BY allocated_at, allocation_id"
        return [_row_to_pending(r) for r in self._read(query, params)]

    def pending_allocation_totals(self) -> Dict[str, int]:
        row = self._read(
            """
            SELECT
                COALESCE(SUM(CASE WHEN claimed = 0 THEN amount END), 0),
                COALESCE(SUM(CASE WHEN claimed = 1 THEN amount END), 0)
            FROM pending_allocations
            """
        )[0]
        return {"unclaimed": row[0], "claimed": row[1]}

    def count_users_with_escrow(self) -> int:
        return self._read("SELECT COUNT(*) FROM accounts WHERE escrow_balance > 0")[0][0]

    # ------------------------------------------------------------------
    # Reconciliation queries: stored cached field vs recomputed value
    # ------------------------------------------------------------------

    def content_aggregate_drift(self) -> List[Tuple[str, int, int]]:
        rows = self._read(
            """
            SELECT c.content_id, c.tip_aggregate,
                   COALESCE((SELECT SUM(t.amount) FROM tips t
                             WHERE t.content_id = c.content_id AND t.status = 'active'), 0)
            FROM content_items c
            """
        )
        return [(r[0], r[1], r[2]) for r in rows if r[1] != r[2]]

    def user_aggregate_drift(self) -> List[Tuple[str, int, int]]:
        rows = self._read(
            """
            SELECT a.user_id, a.tip_aggregate,
                   COALESCE((SELECT SUM(t.amount) FROM tips t
                             WHERE t.actor_id = a.user_id AND t.status = 'active'), 0)
            FROM accounts a
            """
        )
        return [(r[0], r[1], r[2]) for r in rows if r[1] != r[2]]

    def escrow_balance_drift(self) -> List[Tuple[str, int, int]]:
        rows = self._read(
            """
            SELECT a.user_id, a.escrow_balance,
                   COALESCE((SELECT SUM(h.amount - h.claimed_amount) FROM escrow_history h
                             WHERE h.user_id = a.user_id), 0)
            FROM accounts a
            """
        )
        return [(r[0], r[1], r[2]) for r in rows if r[1] != r[2]]

    def _latest_snapshot_drift(
        self, table: str, key: str, column: str, entry_key: str, post_column: str, types: Tuple[str, ...]
    ) -> List[Tuple[str, int, int]]:
        placeholders = ", ".join("?" for _ in types)
        rows = self._read(
            f"""
            SELECT t.{key}, t.{column},
                   COALESCE((SELECT e.{post_column} FROM ledger_entries e
                             WHERE e.{entry_key} = t.{key} AND e.transaction_type IN ({placeholders})
                             ORDER BY e.sequence DESC LIMIT 1), 0)
            FROM {table} t
            """,
            types,
        )
        return [(r[0], r[1], r[2]) for r in rows if r[1] != r[2]]

    def spendable_snapshot_drift(self) -> List[Tuple[str, int, int]]:
        """Spendable balances that differ from the last spendable-moving entry's post snapshot."""
        return self._latest_snapshot_drift(
            "accounts", "user_id", "spendable_balance", "actor_id", "user_balance_post",
            (TransactionType.TIP.value, TransactionType.REFUND.value, TransactionType.TOP_UP.value),
        )

    def bonus_snapshot_drift(self) -> List[Tuple[str, int, int]]:
        return self._latest_snapshot_drift(
            "accounts", "user_id", "bonus_balance", "actor_id", "user_balance_post",
            (TransactionType.BONUS_CREDIT.value,),
        )

    def content_snapshot_drift(self) -> List[Tuple[str, int, int]]:
        return self._latest_snapshot_drift(
            "content_items", "content_id", "tip_aggregate", "content_id", "content_aggregate_post",
            (TransactionType.TIP.value, TransactionType.REFUND.value),
        )

        return [(r[0], r[1], r[2]) for r in rows if r[1] != r[2]]

    # ------------------------------------------------------------------
    # In-transaction operations (caller holds the write lock)
    # ------------------------------------------------------------------

    def get_account_in(self, conn: sqlite3.Connection, user_id: str) -> Optional[Account]:
        row = conn.execute("SELECT * FROM accounts WHERE user_id = ?", (user_id,)).fetchone()
        return _row_to_account(row) if row else None

    def get_content_in(self, conn: sqlite3.Connection, content_id: str) -> Optional[ContentItem]:
        row = conn.execute("SELECT * FROM content_items WHERE content_id = ?", (content_id,)).fetchone()
        if row is None:
            return None
        owners = [
            OwnershipShare(
                payee_name=o["payee_name"],
                percentage=float(o["percentage"]),
                user_id=o["user_id"],
                channel_id=o["channel_id"],
            )
            for o in conn.execute(
                "SELECT * FROM content_owners WHERE content_id = ? ORDER BY id", (content_id,)
            )
        ]
        return ContentItem(
            content_id=row["content_id"],
            title=row["title"],
            tip_aggregate=row["tip_aggregate"],
            owners=owners,
        )

    def get_session_name_in(self, conn: sqlite3.Connection, session_id: Optional[str]) -> Optional[str]:
        if session_id is None:
            return None
        row = conn.execute("SELECT name FROM sessions WHERE session_id = ?", (session_id,)).fetchone()
        return row["name"] if row else None

    def apply_conditional_delta(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        balance_field: BalanceField,
        delta: int,
    ) -> bool:
        """Move an account balance by ``delta`` only if it stays non-negative.

        The precondition and the mutation are one UPDATE statement, so the
        check holds at apply time rather than at whatever earlier moment
        the caller read the balance.

        Returns:
            True if the row was updated, False if the precondition failed
        """
        column = balance_field.value
        cursor = conn.execute(
            f"UPDATE accounts SET {column} = {column} + ? WHERE user_id = ? AND {column} + ? >= 0",
            (delta, user_id, delta),
        )
        return cursor.rowcount == 1

    def apply_user_aggregate_delta(self, conn: sqlite3.Connection, user_id: str, delta: int) -> None:
        """Move the actor's tip aggregate, flooring at zero."""
        conn.execute(
            "UPDATE accounts SET tip_aggregate = MAX(0, tip_aggregate + ?) WHERE user_id = ?",
            (delta, user_id),
        )

    def apply_content_aggregate_delta(self, conn: sqlite3.Connection, content_id: str, delta: int) -> None:
        """Move the content item's received-tips total, flooring at zero."""
        conn.execute(
            "UPDATE content_items SET tip_aggregate = MAX(0, tip_aggregate + ?) WHERE content_id = ?",
            (delta, content_id),
        )

    def active_tip_total(self, conn: sqlite3.Connection) -> int:
        """Sum of all currently active tips, recomputed from the tips table."""
        row = conn.execute(
            "SELECT COALESCE(SUM(amount), 0) FROM tips WHERE status = ?",
            (TipStatus.ACTIVE.value,),
        ).fetchone()
        return row[0]

    def insert_tip(
        self,
        conn: sqlite3.Connection,
        actor_id: str,
        content_id: str,
        session_id: Optional[str],
        amount: int,
        created_at: datetime,
    ) -> Tip:
        tip_id = uuid4().hex
        conn.execute(
            """
            INSERT INTO tips (tip_id, actor_id, content_id, session_id, amount, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (tip_id, actor_id, content_id, session_id, amount, TipStatus.ACTIVE.value, _iso(created_at)),
        )
        return Tip(
            tip_id=tip_id,
            actor_id=actor_id,
            content_id=content_id,
            amount=amount,
            status=TipStatus.ACTIVE,
            created_at=created_at,
            session_id=session_id,
        )

    def get_tip_in(self, conn: sqlite3.Connection, tip_id: str) -> Optional[Tip]:
        row = conn.execute("SELECT * FROM tips WHERE tip_id = ?", (tip_id,)).fetchone()
        return _row_to_tip(row) if row else None

    def mark_tip_refunded(self, conn: sqlite3.Connection, tip_id: str) -> bool:
        cursor = conn.execute(
            "UPDATE tips SET status = ? WHERE tip_id = ? AND status = ?",
            (TipStatus.REFUNDED.value, tip_id, TipStatus.ACTIVE.value),
        )
        return cursor.rowcount == 1

    def find_top_up_in(self, conn: sqlite3.Connection, provider_reference: str) -> Optional[LedgerEntry]:
        row = conn.execute(
            f"""
            SELECT {ENTRY_COLUMNS} FROM ledger_entries
            WHERE transaction_type = ? AND reference_id = ?
            """,
            (TransactionType.TOP_UP.value, provider_reference),
        ).fetchone()
        return row_to_entry(row) if row else None

    def insert_entry(self, conn: sqlite3.Connection, values: Dict[str, Any]) -> LedgerEntry:
        """Append one ledger entry and return it as stored.

        The returned entry is re-read from the row so that whatever is
        hashed later is exactly what was persisted.
        """
        entry_id = uuid4().hex
        conn.execute(
            """
            INSERT INTO ledger_entries (
                entry_id, transaction_type, actor_id, content_id, session_id, amount,
                user_balance_pre, user_balance_post, user_aggregate_pre, user_aggregate_post,
                content_aggregate_pre, content_aggregate_post,
                global_aggregate_pre, global_aggregate_post,
                reference_id, reference_type, username, content_title, session_name,
                description, metadata, created_at
            ) VALUES (
                :entry_id, :transaction_type, :actor_id, :content_id, :session_id, :amount,
                :user_balance_pre, :user_balance_post, :user_aggregate_pre, :user_aggregate_post,
                :content_aggregate_pre, :content_aggregate_post,
                :global_aggregate_pre, :global_aggregate_post,
                :reference_id, :reference_type, :username, :content_title, :session_name,
                :description, :metadata, :created_at
            )
            """,
            {
                "entry_id": entry_id,
                "transaction_type": values["transaction_type"].value,
                "actor_id": values["actor_id"],
                "content_id": values.get("content_id"),
                "session_id": values.get("session_id"),
                "amount": values["amount"],
                "user_balance_pre": values["user_balance_pre"],
                "user_balance_post": values["user_balance_post"],
                "user_aggregate_pre": values["user_aggregate_pre"],
                "user_aggregate_post": values["user_aggregate_post"],
                "content_aggregate_pre": values.get("content_aggregate_pre"),
                "content_aggregate_post": values.get("content_aggregate_post"),
                "global_aggregate_pre": values["global_aggregate_pre"],
                "global_aggregate_post": values["global_aggregate_post"],
                "reference_id": values.get("reference_id"),
                "reference_type": values.get("reference_type"),
                "username": values.get("username"),
                "content_title": values.get("content_title"),
                "session_name": values.get("session_name"),
                "description": values.get("description"),
                "metadata": json.dumps(values.get("metadata") or {}, sort_keys=True),
                "created_at": _iso(values["created_at"]),
            },
        )
        row = conn.execute(
            f"SELECT {ENTRY_COLUMNS} FROM ledger_entries WHERE entry_id = ?", (entry_id,)
        ).fetchone()
        return row_to_entry(row)

    def insert_pending_allocation(
        self,
        conn: sqlite3.Connection,
        tip_id: str,
        content_id: str,
        payee_name: str,
        match_key: str,
        channel_id: Optional[str],
        percentage: str,
        amount: int,
        allocated_at: datetime,
    ) -> str:
        allocation_id = uuid4().hex
        conn.execute(
            """
            INSERT INTO pending_allocations (
                allocation_id, tip_id, content_id, payee_name, match_key, channel_id,
                percentage, amount, claimed, allocated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
            """,
            (allocation_id, tip_id, content_id, payee_name, match_key, channel_id,
             percentage, amount, _iso(allocated_at)),
        )
        return allocation_id

    def unclaimed_allocations_in(self, conn: sqlite3.Connection) -> List[PendingAllocation]:
        rows = conn.execute(
            "SELECT * FROM pending_allocations WHERE claimed = 0 ORDER BY allocated_at, allocation_id"
        ).fetchall()
        return [_row_to_pending(r) for r in rows]

    def claim_allocation(
        self, conn: sqlite3.Connection, allocation_id: str, user_id: str, claimed_at: datetime
    ) -> bool:
        """Mark an allocation claimed; False if another claimer got there first."""
        cursor = conn.execute(
            """
            UPDATE pending_allocations SET claimed = 1, claimed_by = ?, claimed_at = ?
            WHERE allocation_id = ? AND claimed = 0
            """,
            (user_id, _iso(claimed_at), allocation_id),
        )
        return cursor.rowcount == 1

    def add_escrow_history(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        tip_id: str,
        content_id: str,
        amount: int,
        source: EscrowSource,
        allocated_at: datetime,
    ) -> int:
        cursor = conn.execute(
            """
            INSERT INTO escrow_history (
                user_id, tip_id, content_id, amount, claimed_amount, status, source, allocated_at
            ) VALUES (?, ?, ?, ?, 0, ?, ?, ?)
            """,
            (user_id, tip_id, content_id, amount, EscrowStatus.PENDING.value,
             source.value, _iso(allocated_at)),
        )
        return cursor.lastrowid

    def outstanding_escrow_in(self, conn: sqlite3.Connection, user_id: str) -> List[EscrowHistoryItem]:
        """Unpaid escrow history for a user, oldest allocation first."""
        rows = conn.execute(
            """
            SELECT * FROM escrow_history
            WHERE user_id = ? AND claimed_amount < amount
            ORDER BY allocated_at, history_id
            """,
            (user_id,),
        ).fetchall()
        return [_row_to_escrow(r) for r in rows]

    def record_escrow_claim(
        self,
        conn: sqlite3.Connection,
        history_id: int,
        claimed_amount: int,
        status: EscrowStatus,
        claimed_at: datetime,
        payout_reference: Optional[str],
    ) -> None:
        conn.execute(
            """
            UPDATE escrow_history
            SET claimed_amount = ?, status = ?, claimed_at = ?, payout_reference = ?
            WHERE history_id = ?
            """,
            (claimed_amount, status.value, _iso(claimed_at), payout_reference, history_id),
        )


class VerificationRepository:
    """Repository for the verification store.

    Kept apart from the ledger store so that an edit to a ledger row
    does not also rewrite the hash it is checked against.
    """

    def __init__(self, db_path: str = "tip_ledger_verification.db", timeout: float = DEFAULT_BUSY_TIMEOUT):
        self.db_path = db_path
        self.timeout = timeout

    def _read(self, query: str, params: Any = ()) -> List[sqlite3.Row]:
        conn = get_connection(self.db_path, self.timeout)
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()

    def insert_record(self, record: VerificationRecord) -> bool:
        """Insert a record unless one already exists for the entry.

        Returns:
            True if inserted, False if the entry already had a record
        """
        with write_transaction(self.db_path, self.timeout) as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO verification_records (
                    record_id, entry_id, entry_sequence, transaction_type, original_hash,
                    last_observed_hash, status, verification_count, mismatch_count,
                    created_at, last_verified_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.record_id,
                    record.entry_id,
                    record.entry_sequence,
                    record.transaction_type.value,
                    record.original_hash,
                    record.last_observed_hash,
                    record.status.value,
                    record.verification_count,
                    record.mismatch_count,
                    _iso(record.created_at),
                    _iso(record.last_verified_at),
                ),
            )
            return cursor.rowcount == 1

    def get_record(self, entry_id: str) -> Optional[VerificationRecord]:
        rows = self._read("SELECT * FROM verification_records WHERE entry_id = ?", (entry_id,))
        return _row_to_verification(rows[0]) if rows else None

    def record_observation(
        self, entry_id: str, observed_hash: Optional[str], matched: bool, observed_at: datetime
    ) -> Optional[VerificationRecord]:
        """Store the outcome of one verification pass and return the updated record."""
        status = VerificationStatus.VERIFIED if matched else VerificationStatus.MISMATCH
        with write_transaction(self.db_path, self.timeout) as conn:
            conn.execute(
                """
                UPDATE verification_records
                SET last_observed_hash = ?, status = ?, last_verified_at = ?,
                    verification_count = verification_count + 1,
                    mismatch_count = mismatch_count + ?
                WHERE entry_id = ?
                """,
                (observed_hash, status.value, _iso(observed_at), 0 if matched else 1, entry_id),
            )
            row = conn.execute(
                "SELECT * FROM verification_records WHERE entry_id = ?", (entry_id,)
            ).fetchone()
        return _row_to_verification(row) if row else None

    def entry_refs_after(
        self,
        after_sequence: int,
        limit: int,
        transaction_type: Optional[TransactionType] = None,
    ) -> List[Tuple[int, str]]:
        """(entry_sequence, entry_id) pairs of records, in sequence order."""
        query = "SELECT entry_sequence, entry_id FROM verification_records WHERE entry_sequence > ?"
        params: List[Any] = [after_sequence]
        if transaction_type is not None:
            query += " AND transaction_type = ?"
            params.append(transaction_type.value)
        query += " ORDER BY entry_sequence LIMIT ?"
        params.append(limit)
        return [(r[0], r[1]) for r in self._read(query, params)]

    def count(self) -> int:
        return self._read("SELECT COUNT(*) FROM verification_records")[0][0]

    def counts_by_status(self) -> Dict[str, int]:
        rows = self._read("SELECT status, COUNT(*) FROM verification_records GROUP BY status")
        return {r[0]: r[1] for r in rows}

    def counts_by_type(self) -> Dict[str, Dict[str, int]]:
        rows = self._read(
            """
            SELECT transaction_type, COUNT(*),
                   SUM(CASE WHEN status = 'verified' THEN 1 ELSE 0 END),
                   SUM(CASE WHEN status = 'mismatch' THEN 1 ELSE 0 END)
            FROM verification_records GROUP BY transaction_type
            """
        )
        return {r[0]: {"total": r[1], "verified": r[2], "mismatch": r[3]} for r in rows}

    def total_mismatch_count(self) -> int:
        return self._read("SELECT COALESCE(SUM(mismatch_count), 0) FROM verification_records")[0][0]

    def mismatches(self, limit: int = 100) -> List[VerificationRecord]:
        rows = self._read(
            """
            SELECT * FROM verification_records WHERE status = ?
            ORDER BY mismatch_count DESC, last_verified_at DESC LIMIT ?
            """,
            (VerificationStatus.MISMATCH.value, limit),
        )
        return [_row_to_verification(r) for r in rows]
