"""
Storage Backend Module

Transactional datastore for the loan engine with SQLite (single node,
testing) and PostgreSQL (production) implementations. Every unit of work
runs inside ``StorageInterface.atomic()`` on its own connection; row locks
are database locks scoped to that transaction, never in-process mutexes.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, date, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Iterator, Sequence, Tuple, Union
import logging
import sqlite3

from .errors import (
    LoanEngineError, ConflictError, FatalStorageError, LockTimeoutError
)
from .models import (
    Member, CreditTransaction, LoanRequest, LoanPayment, OverrideAuditEntry,
    LoanStatus, PaymentStatus, ACTIVE_LOAN_STATUSES, SUBSCRIPTION_CREDIT_TYPES,
    to_datetime, to_decimal
)


logger = logging.getLogger(__name__)

# Name of the partial unique index enforcing one active loan per member
ACTIVE_LOAN_INDEX = "uq_loan_requests_one_active"

# Advisory lock key serializing override audit chain appends (PostgreSQL)
AUDIT_CHAIN_LOCK_KEY = 7405001

_MEMBER_COLUMNS = (
    "name", "balance", "is_blocked", "joining_fee_status",
    "registration_date", "owner_admin_id"
)
_LOAN_COLUMNS = (
    "status", "approval_date", "rejection_date", "closure_date",
    "deciding_admin_id", "admin_override", "override_reason",
    "rejection_reason", "notes"
)
_PAYMENT_COLUMNS = ("status", "deciding_admin_id", "memo")


class Dialect:
    """SQL differences between backends"""
    name = "generic"
    placeholder = "?"
    for_update = ""
    audit_chain_lock_sql: Optional[str] = None

    def sql(self, query: str) -> str:
        """Rewrite ``?`` placeholders to the backend's paramstyle"""
        if self.placeholder == "?":
            return query
        return query.replace("?", self.placeholder)

    def encode(self, value: Any) -> Any:
        """Convert a Python value to a bind parameter"""
        if isinstance(value, Enum):
            return value.value
        return value

    def is_lock_timeout(self, exc: Exception) -> bool:
        return False

    def is_unique_violation(self, exc: Exception, index_name: str) -> bool:
        return False


class SQLiteDialect(Dialect):
    """
    SQLite has no row locks: ``BEGIN IMMEDIATE`` takes the database write
    lock, which serializes writers across processes (coarser than a row
    lock, same guarantee).
    """
    name = "sqlite"

    def encode(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return value.value
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, Decimal):
            return str(value)
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc).isoformat(timespec='microseconds')
        if isinstance(value, date):
            return value.isoformat()
        return value

    def is_lock_timeout(self, exc: Exception) -> bool:
        if not isinstance(exc, sqlite3.OperationalError):
            return False
        message = str(exc).lower()
        return "locked" in message or "busy" in message

    def is_unique_violation(self, exc: Exception, index_name: str) -> bool:
        # SQLite reports the indexed columns, not the index name
        return (isinstance(exc, sqlite3.IntegrityError)
                and "unique" in str(exc).lower()
                and "loan_requests.member_id" in str(exc))


class PostgreSQLDialect(Dialect):
    """PostgreSQL: ``SELECT ... FOR UPDATE`` row locks with ``lock_timeout``"""
    name = "postgresql"
    placeholder = "%s"
    for_update = " FOR UPDATE"
    audit_chain_lock_sql = "SELECT pg_advisory_xact_lock(?)"

    def __init__(self, errors_module):
        self.errors = errors_module

    def is_lock_timeout(self, exc: Exception) -> bool:
        return isinstance(exc, (self.errors.LockNotAvailable, self.errors.QueryCanceled))

    def is_unique_violation(self, exc: Exception, index_name: str) -> bool:
        if not isinstance(exc, self.errors.UniqueViolation):
            return False
        diag = getattr(exc, "diag", None)
        return diag is None or diag.constraint_name in (None, index_name)


class StorageTransaction:
    """
    One open database transaction. All reads and writes the engine performs
    go through these methods so that locking and encoding stay in one place.
    """

    def __init__(self, connection, dialect: Dialect):
        self.connection = connection
        self.dialect = dialect
        self.rollback_only = False

    def set_rollback_only(self) -> None:
        """Roll back instead of committing when the unit of work ends"""
        self.rollback_only = True

    # ------------------------------------------------------------------
    # Low level
    # ------------------------------------------------------------------

    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        cursor = self.connection.cursor()
        try:
            cursor.execute(self.dialect.sql(query), [self.dialect.encode(p) for p in params])
            return cursor.rowcount
        finally:
            cursor.close()

    def fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        cursor = self.connection.cursor()
        try:
            cursor.execute(self.dialect.sql(query), [self.dialect.encode(p) for p in params])
            return [dict(row) for row in cursor.fetchall()]
        finally:
            cursor.close()

    def fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = self.fetch_all(query, params)
        return rows[0] if rows else None

    def _insert(self, table: str, row: Dict[str, Any]) -> None:
        columns = ", ".join(row.keys())
        placeholders = ", ".join("?" for _ in row)
        self.execute(f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                     list(row.values()))

    def _update(self, table: str, record_id: str, allowed: Tuple[str, ...],
                fields: Dict[str, Any]) -> int:
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Cannot update {table} columns: {sorted(unknown)}")
        if not fields:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in fields)
        return self.execute(f"UPDATE {table} SET {assignments} WHERE id = ?",
                            list(fields.values()) + [record_id])

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    def insert_member(self, member: Member) -> None:
        self._insert("members", member.to_row())

    def update_member(self, member_id: str, **fields) -> int:
        return self._update("members", member_id, _MEMBER_COLUMNS, fields)

    def get_member(self, member_id: str, for_update: bool = False) -> Optional[Member]:
        """Load a member; ``for_update`` holds the row lock until commit"""
        lock = self.dialect.for_update if for_update else ""
        row = self.fetch_one(f"SELECT * FROM members WHERE id = ?{lock}", [member_id])
        return Member.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Subscription ledger
    # ------------------------------------------------------------------

    def insert_credit(self, credit: CreditTransaction) -> None:
        self._insert("credit_transactions", credit.to_row())

    def subscription_totals(self, member_id: str, since: datetime) -> Tuple[Decimal, Decimal]:
        """Accepted and pending subscription/deposit credits since a cutoff"""
        types = [t.value for t in SUBSCRIPTION_CREDIT_TYPES]
        rows = self.fetch_all(
            "SELECT amount, status FROM credit_transactions "
            "WHERE member_id = ? AND date >= ? "
            "AND transaction_type IN (?, ?) AND status IN (?, ?)",
            [member_id, since] + types +
            [PaymentStatus.ACCEPTED.value, PaymentStatus.PENDING.value]
        )
        accepted = Decimal('0')
        pending = Decimal('0')
        for row in rows:
            amount = to_decimal(row['amount'])
            if amount <= 0:
                continue
            if row['status'] == PaymentStatus.ACCEPTED.value:
                accepted += amount
            else:
                pending += amount
        return accepted, pending

    # ------------------------------------------------------------------
    # Loan requests
    # ------------------------------------------------------------------

    def insert_loan(self, loan: LoanRequest) -> None:
        """
        Insert a loan request. A violation of the one-active-loan index is a
        duplicate submission and surfaces as ConflictError.
        """
        try:
            self._insert("loan_requests", loan.to_row())
        except Exception as exc:
            if self.dialect.is_unique_violation(exc, ACTIVE_LOAN_INDEX):
                logger.error(
                    f"Active loan unique index rejected insert for member {loan.member_id}"
                )
                raise ConflictError(
                    "Duplicate loan request: member already has an active loan",
                    member_id=loan.member_id
                ) from exc
            raise

    def get_loan(self, loan_id: str, for_update: bool = False) -> Optional[LoanRequest]:
        lock = self.dialect.for_update if for_update else ""
        row = self.fetch_one(f"SELECT * FROM loan_requests WHERE id = ?{lock}", [loan_id])
        return LoanRequest.from_row(row) if row else None

    def update_loan(self, loan_id: str, **fields) -> int:
        return self._update("loan_requests", loan_id, _LOAN_COLUMNS, fields)

    def find_active_loans(self, member_id: str, for_update: bool = False,
                          exclude_loan_id: Optional[str] = None) -> List[LoanRequest]:
        """Pending or approved loans with no closure date"""
        lock = self.dialect.for_update if for_update else ""
        params: List[Any] = [member_id] + [s.value for s in ACTIVE_LOAN_STATUSES]
        exclude = ""
        if exclude_loan_id:
            exclude = " AND id <> ?"
            params.append(exclude_loan_id)
        rows = self.fetch_all(
            "SELECT * FROM loan_requests WHERE member_id = ? AND status IN (?, ?) "
            f"AND closure_date IS NULL{exclude} ORDER BY request_date{lock}",
            params
        )
        return [LoanRequest.from_row(row) for row in rows]

    def count_active_loans(self, member_id: str) -> int:
        row = self.fetch_one(
            "SELECT COUNT(*) AS active_count FROM loan_requests "
            "WHERE member_id = ? AND status IN (?, ?) AND closure_date IS NULL",
            [member_id] + [s.value for s in ACTIVE_LOAN_STATUSES]
        )
        return int(row['active_count'])

    def latest_closure_date(self, member_id: str) -> Optional[datetime]:
        row = self.fetch_one(
            "SELECT MAX(closure_date) AS last_closure FROM loan_requests "
            "WHERE member_id = ? AND status = ? AND closure_date IS NOT NULL",
            [member_id, LoanStatus.CLOSED.value]
        )
        return to_datetime(row['last_closure']) if row else None

    def find_loans(self, member_id: Optional[str] = None,
                   status: Optional[LoanStatus] = None,
                   owner_admin_id: Optional[str] = None,
                   limit: Optional[int] = None) -> List[LoanRequest]:
        conditions = []
        params: List[Any] = []
        if member_id:
            conditions.append("l.member_id = ?")
            params.append(member_id)
        if status:
            conditions.append("l.status = ?")
            params.append(status.value)
        if owner_admin_id:
            conditions.append("m.owner_admin_id = ?")
            params.append(owner_admin_id)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        query = ("SELECT l.* FROM loan_requests l JOIN members m ON m.id = l.member_id"
                 f"{where} ORDER BY l.request_date DESC")
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        return [LoanRequest.from_row(row) for row in self.fetch_all(query, params)]

    def find_open_approved_loan_ids(self) -> List[str]:
        rows = self.fetch_all(
            "SELECT id FROM loan_requests WHERE status = ? AND closure_date IS NULL "
            "ORDER BY approval_date",
            [LoanStatus.APPROVED.value]
        )
        return [row['id'] for row in rows]

    def find_members_with_multiple_active_loans(self) -> List[Dict[str, Any]]:
        rows = self.fetch_all(
            "SELECT member_id, COUNT(*) AS active_count FROM loan_requests "
            "WHERE status IN (?, ?) AND closure_date IS NULL "
            "GROUP BY member_id HAVING COUNT(*) > 1",
            [s.value for s in ACTIVE_LOAN_STATUSES]
        )
        return [{"member_id": row['member_id'], "active_count": int(row['active_count'])}
                for row in rows]

    # ------------------------------------------------------------------
    # Loan payments
    # ------------------------------------------------------------------

    def insert_payment(self, payment: LoanPayment) -> None:
        self._insert("loan_payments", payment.to_row())

    def get_payment(self, payment_id: str, for_update: bool = False) -> Optional[LoanPayment]:
        lock = self.dialect.for_update if for_update else ""
        row = self.fetch_one(f"SELECT * FROM loan_payments WHERE id = ?{lock}", [payment_id])
        return LoanPayment.from_row(row) if row else None

    def update_payment(self, payment_id: str, **fields) -> int:
        return self._update("loan_payments", payment_id, _PAYMENT_COLUMNS, fields)

    def find_payments(self, loan_id: str,
                      status: Optional[PaymentStatus] = None) -> List[LoanPayment]:
        params: List[Any] = [loan_id]
        status_filter = ""
        if status:
            status_filter = " AND status = ?"
            params.append(status.value)
        rows = self.fetch_all(
            f"SELECT * FROM loan_payments WHERE target_loan_id = ?{status_filter} ORDER BY date",
            params
        )
        return [LoanPayment.from_row(row) for row in rows]

    def payment_totals(self, loan_id: str) -> Tuple[Decimal, Decimal]:
        """Accepted (total paid) and pending payment sums for a loan"""
        accepted = Decimal('0')
        pending = Decimal('0')
        for payment in self.find_payments(loan_id):
            if payment.status == PaymentStatus.ACCEPTED:
                accepted += payment.amount
            elif payment.status == PaymentStatus.PENDING:
                pending += payment.amount
        return accepted, pending

    # ------------------------------------------------------------------
    # Override audit
    # ------------------------------------------------------------------

    def lock_audit_chain(self) -> None:
        """Serialize audit chain appends across transactions and processes"""
        if self.dialect.audit_chain_lock_sql:
            self.fetch_all(self.dialect.audit_chain_lock_sql, [AUDIT_CHAIN_LOCK_KEY])

    def last_audit_entry(self) -> Optional[OverrideAuditEntry]:
        row = self.fetch_one(
            "SELECT * FROM override_audit ORDER BY sequence DESC LIMIT 1"
        )
        return OverrideAuditEntry.from_row(row) if row else None

    def insert_audit_entry(self, entry: OverrideAuditEntry) -> None:
        self._insert("override_audit", entry.to_row())

    def find_audit_entries(self, admin_id: Optional[str] = None,
                           member_id: Optional[str] = None,
                           loan_id: Optional[str] = None,
                           owner_admin_id: Optional[str] = None,
                           start_time: Optional[datetime] = None,
                           end_time: Optional[datetime] = None,
                           limit: Optional[int] = None) -> List[OverrideAuditEntry]:
        conditions = []
        params: List[Any] = []
        for column, value in (("a.admin_id", admin_id), ("a.member_id", member_id),
                              ("a.loan_id", loan_id), ("m.owner_admin_id", owner_admin_id)):
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)
        if start_time:
            conditions.append("a.timestamp >= ?")
            params.append(start_time)
        if end_time:
            conditions.append("a.timestamp <= ?")
            params.append(end_time)
        where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
        query = ("SELECT a.* FROM override_audit a LEFT JOIN members m ON m.id = a.member_id"
                 f"{where} ORDER BY a.sequence")
        entries = [OverrideAuditEntry.from_row(row) for row in self.fetch_all(query, params)]
        if limit:
            entries = entries[-limit:]  # Most recent N entries
        return entries


class StorageInterface(ABC):
    """Abstract interface for transactional storage backends"""

    dialect: Dialect

    @abstractmethod
    def _acquire(self):
        """Get a connection for one transaction"""
        pass

    @abstractmethod
    def _begin(self, connection, write: bool) -> None:
        """Open the transaction on the connection"""
        pass

    @abstractmethod
    def _release(self, connection, broken: bool = False) -> None:
        """Return or close the connection"""
        pass

    @abstractmethod
    def _is_database_error(self, exc: Exception) -> bool:
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connections"""
        pass

    def translate_error(self, exc: Exception) -> Optional[LoanEngineError]:
        """Map a driver exception to the engine taxonomy; None for non-database errors"""
        if self.dialect.is_lock_timeout(exc):
            return LockTimeoutError()
        if self._is_database_error(exc):
            return FatalStorageError(f"Storage error: {exc}")
        return None

    @contextmanager
    def atomic(self, write: bool = True) -> Iterator[StorageTransaction]:
        """
        Context manager for one atomic unit of work.

        Commits on normal exit unless the transaction was marked rollback-only;
        rolls back on any exception and re-raises it, translating driver errors
        to FatalStorageError / LockTimeoutError.
        """
        try:
            connection = self._acquire()
        except Exception as exc:
            translated = self.translate_error(exc)
            if translated is None:
                raise
            raise translated from exc

        broken = False
        try:
            self._begin(connection, write)
            txn = StorageTransaction(connection, self.dialect)
            yield txn
            if txn.rollback_only:
                connection.rollback()
            else:
                connection.commit()
        except BaseException as exc:
            try:
                connection.rollback()
            except Exception as rollback_exc:
                broken = True
                logger.error(f"Rollback failed, discarding connection: {rollback_exc}")
            if isinstance(exc, LoanEngineError) or not isinstance(exc, Exception):
                raise
            translated = self.translate_error(exc)
            if translated is None:
                raise
            raise translated from exc
        finally:
            self._release(connection, broken)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation; one connection per transaction"""

    def __init__(self, db_path: Union[str, Path], lock_timeout: float = 5.0):
        self.db_path = str(db_path)
        if self.db_path == ":memory:":
            raise ValueError("SQLiteStorage needs a database file: each transaction opens its own connection")
        self.lock_timeout = lock_timeout
        self.dialect = SQLiteDialect()

        # Enable WAL mode for better concurrent access
        connection = self._acquire()
        try:
            connection.execute("PRAGMA journal_mode = WAL")
            connection.execute("PRAGMA synchronous = NORMAL")
        finally:
            connection.close()

    def _acquire(self):
        connection = sqlite3.connect(
            self.db_path,
            timeout=self.lock_timeout,
            isolation_level=None,  # Transactions are opened explicitly
            check_same_thread=False
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def _begin(self, connection, write: bool) -> None:
        connection.execute("BEGIN IMMEDIATE" if write else "BEGIN")

    def _release(self, connection, broken: bool = False) -> None:
        connection.close()

    def _is_database_error(self, exc: Exception) -> bool:
        return isinstance(exc, sqlite3.Error)

    def close(self) -> None:
        """Nothing pooled"""
        pass


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with a threaded connection pool"""

    def __init__(self, connection_string: str, lock_timeout: float = 5.0,
                 min_connections: int = 1, max_connections: int = 10):
        try:
            import psycopg2
            import psycopg2.errors
            import psycopg2.extras
            import psycopg2.pool
            self.psycopg2 = psycopg2
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install psycopg2-binary")

        self.connection_string = connection_string
        self.lock_timeout = lock_timeout
        self.dialect = PostgreSQLDialect(psycopg2.errors)
        self._pool = psycopg2.pool.ThreadedConnectionPool(
            min_connections, max_connections, connection_string,
            cursor_factory=psycopg2.extras.RealDictCursor
        )

    def _acquire(self):
        connection = self._pool.getconn()
        connection.autocommit = False  # We handle transactions manually
        return connection

    def _begin(self, connection, write: bool) -> None:
        cursor = connection.cursor()
        try:
            # Transactions start implicitly; bound how long a row lock may block
            timeout_ms = int(self.lock_timeout * 1000)
            cursor.execute(f"SET LOCAL lock_timeout = '{timeout_ms}ms'")
        finally:
            cursor.close()

    def _release(self, connection, broken: bool = False) -> None:
        self._pool.putconn(connection, close=broken or bool(connection.closed))

    def _is_database_error(self, exc: Exception) -> bool:
        return isinstance(exc, self.psycopg2.Error)

    def close(self) -> None:
        """Close all pooled connections"""
        self._pool.closeall()


def create_storage(database_url: str, lock_timeout: float = 5.0,
                   min_connections: int = 1, max_connections: int = 10) -> StorageInterface:
    """Build a storage backend from a URL (``sqlite:///path`` or ``postgresql://...``)"""
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):], lock_timeout=lock_timeout)
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url, lock_timeout=lock_timeout,
                                 min_connections=min_connections,
                                 max_connections=max_connections)
    raise ValueError(f"Unsupported database URL: {database_url}")
