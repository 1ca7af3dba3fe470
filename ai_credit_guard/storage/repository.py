"""
Repository pattern for data access.

Handles balances, reservations, pricing and the append-only token usage
ledger on top of SQLite. Every public method runs in its own transaction.
"""

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Optional, Protocol

from ai_credit_guard.core.errors import UnknownUserError
from ai_credit_guard.core.pricing import DEFAULT_PRICING, ModelPricing

from .db import DEFAULT_DB_PATH, get_connection
from .models import Reservation, ReservationContext, ReservationStatus, TokenUsageRecord

SCHEMA = """
CREATE TABLE IF NOT EXISTS user_account (
    user_id TEXT PRIMARY KEY,
    balance TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_reservation (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL REFERENCES user_account(user_id),
    credits_reserved INTEGER NOT NULL CHECK (credits_reserved >= 1),
    conversation_id TEXT,
    message_id TEXT,
    model TEXT NOT NULL,
    provider TEXT NOT NULL,
    operation_type TEXT NOT NULL,
    estimated_tokens INTEGER NOT NULL DEFAULT 0,
    token_count_method TEXT,
    buffer_multiplier REAL,
    created_at TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    status TEXT NOT NULL,
    terminated_at TEXT,
    reason TEXT
);

CREATE INDEX IF NOT EXISTS idx_reservation_user_status
    ON credit_reservation (user_id, status);

CREATE TABLE IF NOT EXISTS token_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    conversation_id TEXT,
    message_id TEXT,
    reservation_id TEXT UNIQUE,
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    input_tokens INTEGER NOT NULL,
    output_tokens INTEGER NOT NULL,
    total_tokens INTEGER NOT NULL,
    input_cost_usd TEXT NOT NULL,
    output_cost_usd TEXT NOT NULL,
    total_cost_usd TEXT NOT NULL,
    credits_used TEXT NOT NULL,
    credits_charged INTEGER NOT NULL,
    is_estimated INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS model_pricing (
    provider TEXT NOT NULL,
    model TEXT NOT NULL,
    input_price_per_1k TEXT NOT NULL,
    output_price_per_1k TEXT NOT NULL,
    PRIMARY KEY (provider, model)
);

CREATE TABLE IF NOT EXISTS credit_audit_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    operation TEXT NOT NULL,
    credits_amount TEXT NOT NULL,
    balance_before TEXT NOT NULL,
    balance_after TEXT NOT NULL,
    reservation_id TEXT,
    reason TEXT,
    created_at TEXT NOT NULL
);
"""

RESERVATION_COLUMNS = (
    "id, user_id, credits_reserved, conversation_id, message_id, model, provider, "
    "operation_type, estimated_tokens, token_count_method, buffer_multiplier, "
    "created_at, expires_at, status, terminated_at, reason"
)

USAGE_COLUMNS = (
    "user_id, conversation_id, message_id, reservation_id, provider, model, "
    "input_tokens, output_tokens, total_tokens, input_cost_usd, output_cost_usd, "
    "total_cost_usd, credits_used, credits_charged, is_estimated, created_at"
)


@dataclass(frozen=True)
class BalanceChange:
    """Result of a debit or credit against a stored balance."""
    balance_before: Decimal
    balance_after: Decimal
    amount_applied: Decimal
    amount_uncollected: Decimal = Decimal("0")


class CreditStore(Protocol):
    """Persistence boundary consumed by the credit ledger."""

    def get_balance(self, user_id: str) -> Decimal: ...

    def debit(self, user_id: str, amount: Decimal, reason: str,
              reservation_id: Optional[str] = None) -> BalanceChange: ...

    def credit(self, user_id: str, amount: Decimal, reason: str) -> BalanceChange: ...

    def create_reservation_row(self, reservation: Reservation) -> bool: ...

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]: ...

    def update_reservation_status(self, reservation_id: str, new_status: ReservationStatus,
                                  reason: Optional[str], at: datetime) -> bool: ...

    def sum_active_reservations(self, user_id: str) -> int: ...

    def list_active_reservations(self, user_id: str, limit: int = 50) -> List[Reservation]: ...

    def list_expired_reservations(self, now: datetime, limit: int = 100) -> List[Reservation]: ...

    def append_token_usage_row(self, record: TokenUsageRecord) -> int: ...

    def settle_reservation_rows(self, reservation_id: str, amount: Decimal,
                                record: TokenUsageRecord, at: datetime) -> Optional[BalanceChange]: ...

    def fetch_token_usage(self, user_id: Optional[str] = None, limit: int = 100) -> List[TokenUsageRecord]: ...

    def get_usage_totals(self, user_id: str) -> Dict[str, object]: ...

    def create_account(self, user_id: str, balance: Decimal = Decimal("0")) -> None: ...

    def get_pricing(self, model: str, provider: str) -> Optional[ModelPricing]: ...

    def upsert_pricing(self, pricing: Iterable[ModelPricing]) -> int: ...


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all ledger tables if they don't exist.

    token_usage and credit_audit_log are append-only: no UPDATE or DELETE
    is ever issued against them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def _row_to_reservation(row: sqlite3.Row) -> Reservation:
    return Reservation(
        id=row[0],
        user_id=row[1],
        credits_reserved=row[2],
        context=ReservationContext(
            conversation_id=row[3],
            message_id=row[4],
            model=row[5],
            provider=row[6],
            operation_type=row[7],
            estimated_tokens=row[8],
            token_count_method=row[9],
            buffer_multiplier=row[10],
        ),
        created_at=datetime.fromisoformat(row[11]),
        expires_at=datetime.fromisoformat(row[12]),
        status=ReservationStatus(row[13]),
        terminated_at=datetime.fromisoformat(row[14]) if row[14] else None,
        reason=row[15],
    )


def _row_to_usage(row: sqlite3.Row) -> TokenUsageRecord:
    return TokenUsageRecord(
        user_id=row[0],
        conversation_id=row[1],
        message_id=row[2],
        reservation_id=row[3],
        provider=row[4],
        model=row[5],
        input_tokens=row[6],
        output_tokens=row[7],
        total_tokens=row[8],
        input_cost_usd=Decimal(row[9]),
        output_cost_usd=Decimal(row[10]),
        total_cost_usd=Decimal(row[11]),
        credits_used=Decimal(row[12]),
        credits_charged=row[13],
        is_estimated=bool(row[14]),
        created_at=datetime.fromisoformat(row[15]),
    )


class SQLiteCreditStore:
    """SQLite implementation of the CreditStore boundary.

    Writes use `BEGIN IMMEDIATE` so concurrent writers are serialized by
    SQLite itself; reservation status changes are compare-and-set on
    status = 'active'.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    # Accounts

    def create_account(self, user_id: str, balance: Decimal = Decimal("0")) -> None:
        """Create a user account, leaving an existing one untouched."""
        if balance < 0:
            raise ValueError("balance cannot be negative")
        with self._transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO user_account (user_id, balance, updated_at) VALUES (?, ?, ?)",
                (user_id, str(balance), datetime.now().isoformat()),
            )

    def get_balance(self, user_id: str) -> Decimal:
        conn = get_connection(self.db_path)
        try:
            return self._read_balance(conn, user_id)
        finally:
            conn.close()

    def _read_balance(self, conn: sqlite3.Connection, user_id: str) -> Decimal:
        row = conn.execute(
            "SELECT balance FROM user_account WHERE user_id = ?", (user_id,)
        ).fetchone()
        if row is None:
            raise UnknownUserError(f"User not found: {user_id}")
        return Decimal(row[0])

    def _apply_balance_change(
        self,
        conn: sqlite3.Connection,
        user_id: str,
        delta: Decimal,
        operation: str,
        reason: str,
        reservation_id: Optional[str],
    ) -> BalanceChange:
        before = self._read_balance(conn, user_id)
        uncollected = Decimal("0")
        after = before + delta
        if after < 0:
            # Balance never goes negative; the shortfall is reported back
            uncollected = -after
            after = Decimal("0")
        now = datetime.now().isoformat()
        conn.execute(
            "UPDATE user_account SET balance = ?, updated_at = ? WHERE user_id = ?",
            (str(after), now, user_id),
        )
        conn.execute(
            """
            INSERT INTO credit_audit_log
            (user_id, operation, credits_amount, balance_before, balance_after,
             reservation_id, reason, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (user_id, operation, str(abs(delta)), str(before), str(after),
             reservation_id, reason, now),
        )
        return BalanceChange(
            balance_before=before,
            balance_after=after,
            amount_applied=abs(after - before),
            amount_uncollected=uncollected,
        )

    def debit(self, user_id: str, amount: Decimal, reason: str,
              reservation_id: Optional[str] = None) -> BalanceChange:
        if amount < 0:
            raise ValueError("debit amount cannot be negative")
        with self._transaction() as conn:
            return self._apply_balance_change(conn, user_id, -amount, "deduct", reason, reservation_id)

    def credit(self, user_id: str, amount: Decimal, reason: str) -> BalanceChange:
        if amount <= 0:
            raise ValueError("credit amount must be positive")
        with self._transaction() as conn:
            return self._apply_balance_change(conn, user_id, amount, "grant", reason, None)

    def fetch_audit_log(self, user_id: str, limit: int = 100) -> List[Dict[str, str]]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                SELECT operation, credits_amount, balance_before, balance_after,
                       reservation_id, reason, created_at
                FROM credit_audit_log WHERE user_id = ?
                ORDER BY id DESC LIMIT ?
                """,
                (user_id, limit),
            )
            keys = ("operation", "credits_amount", "balance_before", "balance_after",
                    "reservation_id", "reason", "created_at")
            return [dict(zip(keys, row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    # Reservations

    def create_reservation_row(self, reservation: Reservation) -> bool:
        """Insert an active reservation if the user still has the headroom.

        Balance and active holds are re-read inside the write transaction,
        so two writers can never reserve the same credits.

        Returns:
            True if the row was written, False if available balance is short
        """
        with self._transaction() as conn:
            balance = self._read_balance(conn, reservation.user_id)
            held = self._sum_active(conn, reservation.user_id)
            if Decimal(reservation.credits_reserved) > balance - held:
                return False
            ctx = reservation.context
            conn.execute(
                f"INSERT INTO credit_reservation ({RESERVATION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    reservation.id, reservation.user_id, reservation.credits_reserved,
                    ctx.conversation_id, ctx.message_id, ctx.model, ctx.provider,
                    ctx.operation_type, ctx.estimated_tokens, ctx.token_count_method,
                    ctx.buffer_multiplier, reservation.created_at.isoformat(),
                    reservation.expires_at.isoformat(), reservation.status.value,
                    None, None,
                ),
            )
            return True

    def get_reservation(self, reservation_id: str) -> Optional[Reservation]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {RESERVATION_COLUMNS} FROM credit_reservation WHERE id = ?",
                (reservation_id,),
            ).fetchone()
            return _row_to_reservation(row) if row else None
        finally:
            conn.close()

    def _transition(self, conn: sqlite3.Connection, reservation_id: str,
                    new_status: ReservationStatus, reason: Optional[str], at: datetime) -> bool:
        cursor = conn.execute(
            """
            UPDATE credit_reservation SET status = ?, terminated_at = ?, reason = ?
            WHERE id = ? AND status = ?
            """,
            (new_status.value, at.isoformat(), reason, reservation_id,
             ReservationStatus.ACTIVE.value),
        )
        return cursor.rowcount == 1

    def update_reservation_status(self, reservation_id: str, new_status: ReservationStatus,
                                  reason: Optional[str], at: datetime) -> bool:
        """Move an active reservation to a terminal status.

        Returns:
            False if the reservation was not active (compare-and-set lost)
        """
        with self._transaction() as conn:
            return self._transition(conn, reservation_id, new_status, reason, at)

    def _sum_active(self, conn: sqlite3.Connection, user_id: str) -> int:
        row = conn.execute(
            "SELECT COALESCE(SUM(credits_reserved), 0) FROM credit_reservation "
            "WHERE user_id = ? AND status = ?",
            (user_id, ReservationStatus.ACTIVE.value),
        ).fetchone()
        return int(row[0])

    def sum_active_reservations(self, user_id: str) -> int:
        conn = get_connection(self.db_path)
        try:
            return self._sum_active(conn, user_id)
        finally:
            conn.close()

    def list_active_reservations(self, user_id: str, limit: int = 50) -> List[Reservation]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {RESERVATION_COLUMNS} FROM credit_reservation "
                "WHERE user_id = ? AND status = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, ReservationStatus.ACTIVE.value, limit),
            )
            return [_row_to_reservation(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def list_expired_reservations(self, now: datetime, limit: int = 100) -> List[Reservation]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {RESERVATION_COLUMNS} FROM credit_reservation "
                "WHERE status = ? AND expires_at < ? ORDER BY expires_at LIMIT ?",
                (ReservationStatus.ACTIVE.value, now.isoformat(), limit),
            )
            return [_row_to_reservation(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    # Token usage ledger

    def _insert_usage(self, conn: sqlite3.Connection, record: TokenUsageRecord) -> int:
        created_at = record.created_at or datetime.now()
        cursor = conn.execute(
            f"INSERT INTO token_usage ({USAGE_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.user_id, record.conversation_id, record.message_id,
                record.reservation_id, record.provider, record.model,
                record.input_tokens, record.output_tokens, record.total_tokens,
                str(record.input_cost_usd), str(record.output_cost_usd),
                str(record.total_cost_usd), str(record.credits_used),
                record.credits_charged, int(record.is_estimated),
                created_at.isoformat(),
            ),
        )
        return cursor.lastrowid

    def append_token_usage_row(self, record: TokenUsageRecord) -> int:
        """Append a single usage row. Returns its row id."""
        with self._transaction() as conn:
            return self._insert_usage(conn, record)

    def settle_reservation_rows(self, reservation_id: str, amount: Decimal,
                                record: TokenUsageRecord, at: datetime) -> Optional[BalanceChange]:
        """Settle, debit and record usage in one transaction.

        Returns:
            The balance change, or None if the reservation was no longer active
        """
        with self._transaction() as conn:
            if not self._transition(conn, reservation_id, ReservationStatus.SETTLED,
                                    "settled", at):
                return None
            change = self._apply_balance_change(
                conn, record.user_id, -amount, "deduct",
                "Reservation settlement", reservation_id,
            )
            self._insert_usage(conn, record)
            return change

    def fetch_token_usage(self, user_id: Optional[str] = None, limit: int = 100) -> List[TokenUsageRecord]:
        """Usage rows, newest first, optionally for one user."""
        conn = get_connection(self.db_path)
        try:
            query = f"SELECT {USAGE_COLUMNS} FROM token_usage"
            params: list = []
            if user_id:
                query += " WHERE user_id = ?"
                params.append(user_id)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            return [_row_to_usage(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def get_usage_totals(self, user_id: str) -> Dict[str, object]:
        """Aggregate usage for one user."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT COUNT(*), COALESCE(SUM(total_tokens), 0), COALESCE(SUM(credits_charged), 0) "
                "FROM token_usage WHERE user_id = ?",
                (user_id,),
            )
            count, tokens, charged = cursor.fetchone()
            # Costs are TEXT decimals; sum them exactly in Python
            cost_rows = conn.execute(
                "SELECT total_cost_usd, credits_used FROM token_usage WHERE user_id = ?",
                (user_id,),
            ).fetchall()
            return {
                "total_requests": count,
                "total_tokens": tokens,
                "total_cost_usd": sum((Decimal(r[0]) for r in cost_rows), Decimal("0")),
                "total_credits_used": sum((Decimal(r[1]) for r in cost_rows), Decimal("0")),
                "total_credits_charged": charged,
            }
        finally:
            conn.close()

    # Pricing

    def get_pricing(self, model: str, provider: str) -> Optional[ModelPricing]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT provider, model, input_price_per_1k, output_price_per_1k "
                "FROM model_pricing WHERE model = ? AND provider = ?",
                (model, provider),
            ).fetchone()
            if row is None:
                return None
            return ModelPricing(row[0], row[1], Decimal(row[2]), Decimal(row[3]))
        finally:
            conn.close()

    def upsert_pricing(self, pricing: Iterable[ModelPricing]) -> int:
        """Insert or replace pricing rows atomically. Returns the row count."""
        count = 0
        with self._transaction() as conn:
            for p in pricing:
                conn.execute(
                    "INSERT OR REPLACE INTO model_pricing "
                    "(provider, model, input_price_per_1k, output_price_per_1k) VALUES (?, ?, ?, ?)",
                    (p.provider, p.model, str(p.input_price_per_1k), str(p.output_price_per_1k)),
                )
                count += 1
        return count

    def list_pricing(self, provider: Optional[str] = None) -> List[ModelPricing]:
        conn = get_connection(self.db_path)
        try:
            query = "SELECT provider, model, input_price_per_1k, output_price_per_1k FROM model_pricing"
            params: list = []
            if provider:
                query += " WHERE provider = ?"
                params.append(provider)
            query += " ORDER BY provider, model"
            return [
                ModelPricing(row[0], row[1], Decimal(row[2]), Decimal(row[3]))
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    def seed_default_pricing(self) -> int:
        return self.upsert_pricing(DEFAULT_PRICING)
