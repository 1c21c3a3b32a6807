"""
Database Migration System

Versioned schema for the loan engine on SQLite and PostgreSQL, without
external dependencies. Also verifies that the partial unique index behind
the one-active-loan-per-member invariant is actually present.
"""

from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import hashlib
import logging

from .errors import FatalStorageError
from .storage import StorageInterface, ACTIVE_LOAN_INDEX


logger = logging.getLogger(__name__)


class Migration:
    """Represents a single database migration, with DDL per SQL dialect"""

    def __init__(self, version: int, name: str, up_sql: Dict[str, List[str]],
                 down_sql: Optional[Dict[str, List[str]]] = None):
        self.version = version
        self.name = name
        self.up_sql = up_sql
        self.down_sql = down_sql
        self.applied_at: Optional[datetime] = None

    def statements(self, dialect: str, down: bool = False) -> List[str]:
        source = self.down_sql if down else self.up_sql
        if not source:
            return []
        if dialect not in source:
            raise ValueError(f"{self} has no SQL for dialect {dialect}")
        return source[dialect]

    def __str__(self) -> str:
        return f"Migration v{self.version:03d}: {self.name}"

    def __repr__(self) -> str:
        return f"Migration(version={self.version}, name='{self.name}')"


class MigrationManager:
    """Manages database migrations"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.dialect = storage.dialect.name
        self.migrations: List[Migration] = []
        self._migration_table = "schema_migrations"
        self._init_migrations()
        self._ensure_migration_table()

    def _init_migrations(self) -> None:
        """Initialize built-in migrations"""

        # v001: Members (owned by collaborators, read under lock by the engine)
        self.add_migration(1, "Create members table", {
            "sqlite": ["""
                CREATE TABLE IF NOT EXISTS members (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    balance TEXT NOT NULL DEFAULT '0',
                    is_blocked INTEGER NOT NULL DEFAULT 0,
                    joining_fee_status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (joining_fee_status IN ('pending', 'approved', 'rejected')),
                    registration_date TEXT,
                    owner_admin_id TEXT
                )
            """],
            "postgresql": ["""
                CREATE TABLE IF NOT EXISTS members (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    balance NUMERIC(14, 3) NOT NULL DEFAULT 0,
                    is_blocked BOOLEAN NOT NULL DEFAULT FALSE,
                    joining_fee_status TEXT NOT NULL DEFAULT 'pending'
                        CHECK (joining_fee_status IN ('pending', 'approved', 'rejected')),
                    registration_date DATE,
                    owner_admin_id TEXT
                )
            """],
        }, {
            "sqlite": ["DROP TABLE IF EXISTS members"],
            "postgresql": ["DROP TABLE IF EXISTS members"],
        })

        # v002: Subscription ledger
        self.add_migration(2, "Create credit transactions table", {
            "sqlite": ["""
                CREATE TABLE IF NOT EXISTS credit_transactions (
                    id TEXT PRIMARY KEY,
                    member_id TEXT NOT NULL REFERENCES members(id),
                    amount TEXT NOT NULL,
                    transaction_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    date TEXT NOT NULL,
                    memo TEXT
                )
            """, """
                CREATE INDEX IF NOT EXISTS idx_credit_transactions_member_date
                ON credit_transactions(member_id, date)
            """],
            "postgresql": ["""
                CREATE TABLE IF NOT EXISTS credit_transactions (
                    id TEXT PRIMARY KEY,
                    member_id TEXT NOT NULL REFERENCES members(id),
                    amount NUMERIC(14, 3) NOT NULL,
                    transaction_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    date TIMESTAMPTZ NOT NULL,
                    memo TEXT
                )
            """, """
                CREATE INDEX IF NOT EXISTS idx_credit_transactions_member_date
                ON credit_transactions(member_id, date)
            """],
        }, {
            "sqlite": ["DROP TABLE IF EXISTS credit_transactions"],
            "postgresql": ["DROP TABLE IF EXISTS credit_transactions"],
        })

        # v003: Loan requests with the one-active-loan partial unique index
        self.add_migration(3, "Create loan requests table", {
            "sqlite": ["""
                CREATE TABLE IF NOT EXISTS loan_requests (
                    id TEXT PRIMARY KEY,
                    member_id TEXT NOT NULL REFERENCES members(id),
                    requested_amount TEXT NOT NULL,
                    installment_amount TEXT NOT NULL,
                    implied_period INTEGER NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('pending', 'approved', 'rejected', 'closed')),
                    request_date TEXT NOT NULL,
                    approval_date TEXT,
                    rejection_date TEXT,
                    closure_date TEXT,
                    deciding_admin_id TEXT,
                    admin_override INTEGER NOT NULL DEFAULT 0,
                    override_reason TEXT,
                    rejection_reason TEXT,
                    notes TEXT
                )
            """, f"""
                CREATE UNIQUE INDEX IF NOT EXISTS {ACTIVE_LOAN_INDEX}
                ON loan_requests(member_id)
                WHERE status IN ('pending', 'approved') AND closure_date IS NULL
            """, """
                CREATE INDEX IF NOT EXISTS idx_loan_requests_member
                ON loan_requests(member_id, status)
            """],
            "postgresql": ["""
                CREATE TABLE IF NOT EXISTS loan_requests (
                    id TEXT PRIMARY KEY,
                    member_id TEXT NOT NULL REFERENCES members(id),
                    requested_amount NUMERIC(14, 3) NOT NULL,
                    installment_amount NUMERIC(14, 3) NOT NULL,
                    implied_period INTEGER NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('pending', 'approved', 'rejected', 'closed')),
                    request_date TIMESTAMPTZ NOT NULL,
                    approval_date TIMESTAMPTZ,
                    rejection_date TIMESTAMPTZ,
                    closure_date TIMESTAMPTZ,
                    deciding_admin_id TEXT,
                    admin_override BOOLEAN NOT NULL DEFAULT FALSE,
                    override_reason TEXT,
                    rejection_reason TEXT,
                    notes TEXT
                )
            """, f"""
                CREATE UNIQUE INDEX IF NOT EXISTS {ACTIVE_LOAN_INDEX}
                ON loan_requests(member_id)
                WHERE status IN ('pending', 'approved') AND closure_date IS NULL
            """, """
                CREATE INDEX IF NOT EXISTS idx_loan_requests_member
                ON loan_requests(member_id, status)
            """],
        }, {
            "sqlite": ["DROP TABLE IF EXISTS loan_requests"],
            "postgresql": ["DROP TABLE IF EXISTS loan_requests"],
        })

        # v004: Loan payments
        self.add_migration(4, "Create loan payments table", {
            "sqlite": ["""
                CREATE TABLE IF NOT EXISTS loan_payments (
                    id TEXT PRIMARY KEY,
                    target_loan_id TEXT NOT NULL REFERENCES loan_requests(id),
                    member_id TEXT NOT NULL REFERENCES members(id),
                    amount TEXT NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('pending', 'accepted', 'rejected')),
                    date TEXT NOT NULL,
                    deciding_admin_id TEXT,
                    memo TEXT
                )
            """, """
                CREATE INDEX IF NOT EXISTS idx_loan_payments_loan
                ON loan_payments(target_loan_id, status)
            """],
            "postgresql": ["""
                CREATE TABLE IF NOT EXISTS loan_payments (
                    id TEXT PRIMARY KEY,
                    target_loan_id TEXT NOT NULL REFERENCES loan_requests(id),
                    member_id TEXT NOT NULL REFERENCES members(id),
                    amount NUMERIC(14, 3) NOT NULL,
                    status TEXT NOT NULL
                        CHECK (status IN ('pending', 'accepted', 'rejected')),
                    date TIMESTAMPTZ NOT NULL,
                    deciding_admin_id TEXT,
                    memo TEXT
                )
            """, """
                CREATE INDEX IF NOT EXISTS idx_loan_payments_loan
                ON loan_payments(target_loan_id, status)
            """],
        }, {
            "sqlite": ["DROP TABLE IF EXISTS loan_payments"],
            "postgresql": ["DROP TABLE IF EXISTS loan_payments"],
        })

        # v005: Append-only override audit chain
        self.add_migration(5, "Create override audit table", {
            "sqlite": ["""
                CREATE TABLE IF NOT EXISTS override_audit (
                    id TEXT PRIMARY KEY,
                    sequence INTEGER NOT NULL UNIQUE,
                    admin_id TEXT NOT NULL,
                    member_id TEXT NOT NULL REFERENCES members(id),
                    loan_id TEXT NOT NULL REFERENCES loan_requests(id),
                    failed_rules TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    previous_hash TEXT NOT NULL,
                    current_hash TEXT NOT NULL
                )
            """, """
                CREATE INDEX IF NOT EXISTS idx_override_audit_loan
                ON override_audit(loan_id)
            """],
            "postgresql": ["""
                CREATE TABLE IF NOT EXISTS override_audit (
                    id TEXT PRIMARY KEY,
                    sequence BIGINT NOT NULL UNIQUE,
                    admin_id TEXT NOT NULL,
                    member_id TEXT NOT NULL REFERENCES members(id),
                    loan_id TEXT NOT NULL REFERENCES loan_requests(id),
                    failed_rules TEXT NOT NULL,
                    reason TEXT NOT NULL,
                    timestamp TIMESTAMPTZ NOT NULL,
                    previous_hash TEXT NOT NULL,
                    current_hash TEXT NOT NULL
                )
            """, """
                CREATE INDEX IF NOT EXISTS idx_override_audit_loan
                ON override_audit(loan_id)
            """],
        }, {
            "sqlite": ["DROP TABLE IF EXISTS override_audit"],
            "postgresql": ["DROP TABLE IF EXISTS override_audit"],
        })

    def _ensure_migration_table(self) -> None:
        """Ensure the migration tracking table exists"""
        with self.storage.atomic() as txn:
            txn.execute(f"""
                CREATE TABLE IF NOT EXISTS {self._migration_table} (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at TEXT NOT NULL,
                    checksum TEXT NOT NULL
                )
            """)

    def add_migration(self, version: int, name: str, up_sql: Dict[str, List[str]],
                      down_sql: Optional[Dict[str, List[str]]] = None) -> None:
        """Add a migration to the manager"""
        migration = Migration(version, name, up_sql, down_sql)
        self.migrations.append(migration)
        # Keep migrations sorted by version
        self.migrations.sort(key=lambda m: m.version)

    def get_current_version(self) -> int:
        """Get the current database version"""
        with self.storage.atomic(write=False) as txn:
            row = txn.fetch_one(
                f"SELECT MAX(version) AS version FROM {self._migration_table}"
            )
        if not row or row['version'] is None:
            return 0
        return int(row['version'])

    def get_pending_migrations(self, target_version: Optional[int] = None) -> List[Migration]:
        """Get list of pending migrations"""
        current_version = self.get_current_version()
        max_version = target_version or max((m.version for m in self.migrations), default=0)

        return [m for m in self.migrations if current_version < m.version <= max_version]

    def get_applied_migrations(self) -> List[Dict[str, Any]]:
        """Get list of applied migrations"""
        with self.storage.atomic(write=False) as txn:
            return txn.fetch_all(
                f"SELECT version, name, applied_at, checksum FROM {self._migration_table} "
                "ORDER BY version"
            )

    def migrate_up(self, target_version: Optional[int] = None) -> List[Migration]:
        """Apply pending migrations up to target version"""
        pending = self.get_pending_migrations(target_version)
        applied = []

        if not pending:
            logger.info("No pending migrations to apply")
            return applied

        logger.info(f"Applying {len(pending)} pending migrations")

        for migration in pending:
            try:
                logger.info(f"Applying {migration}")

                with self.storage.atomic() as txn:
                    for statement in migration.statements(self.dialect):
                        txn.execute(statement)

                    txn.execute(
                        f"INSERT INTO {self._migration_table} (version, name, applied_at, checksum) "
                        "VALUES (?, ?, ?, ?)",
                        [migration.version, migration.name,
                         datetime.now(timezone.utc).isoformat(),
                         self._calculate_checksum(migration)]
                    )

                migration.applied_at = datetime.now(timezone.utc)
                applied.append(migration)
                logger.info(f"Successfully applied {migration}")

            except Exception as e:
                logger.error(f"Failed to apply {migration}: {e}")
                raise FatalStorageError(f"Migration failed: {migration}") from e

        logger.info(f"Successfully applied {len(applied)} migrations")
        return applied

    def migrate_down(self, target_version: int) -> List[Migration]:
        """Rollback migrations down to target version"""
        current_version = self.get_current_version()

        if target_version >= current_version:
            logger.info("Target version is not lower than current version")
            return []

        rollback_migrations = [
            m for m in reversed(self.migrations)
            if target_version < m.version <= current_version
        ]
        rolledback = []

        logger.info(f"Rolling back {len(rollback_migrations)} migrations")

        for migration in rollback_migrations:
            try:
                if not migration.down_sql:
                    logger.warning(f"No rollback SQL for {migration}, skipping")
                    continue

                logger.info(f"Rolling back {migration}")

                with self.storage.atomic() as txn:
                    for statement in migration.statements(self.dialect, down=True):
                        txn.execute(statement)
                    txn.execute(
                        f"DELETE FROM {self._migration_table} WHERE version = ?",
                        [migration.version]
                    )

                rolledback.append(migration)
                logger.info(f"Successfully rolled back {migration}")

            except Exception as e:
                logger.error(f"Failed to rollback {migration}: {e}")
                raise FatalStorageError(f"Rollback failed: {migration}") from e

        logger.info(f"Successfully rolled back {len(rolledback)} migrations")
        return rolledback

    def _calculate_checksum(self, migration: Migration) -> str:
        """Calculate checksum for migration SQL"""
        sql = "\n".join(migration.statements(self.dialect))
        return hashlib.md5(sql.encode()).hexdigest()

    def validate_migrations(self) -> bool:
        """Validate that applied migrations match expected checksums"""
        for applied_migration in self.get_applied_migrations():
            version = int(applied_migration["version"])
            stored_checksum = applied_migration.get("checksum", "")

            migration = next((m for m in self.migrations if m.version == version), None)
            if not migration:
                logger.warning(f"Applied migration v{version} not found in definitions")
                continue

            expected_checksum = self._calculate_checksum(migration)
            if stored_checksum != expected_checksum:
                logger.error(f"Checksum mismatch for v{version}: expected {expected_checksum}, got {stored_checksum}")
                return False

        logger.info("All applied migrations validated successfully")
        return True

    def verify_active_loan_index(self) -> None:
        """
        Confirm the datastore holds a real partial unique index over active
        loans. Raises FatalStorageError when it is missing or not partial.
        """
        with self.storage.atomic(write=False) as txn:
            if self.dialect == "sqlite":
                row = txn.fetch_one(
                    "SELECT sql AS definition FROM sqlite_master WHERE type = 'index' AND name = ?",
                    [ACTIVE_LOAN_INDEX]
                )
            else:
                row = txn.fetch_one(
                    "SELECT indexdef AS definition FROM pg_indexes WHERE indexname = ?",
                    [ACTIVE_LOAN_INDEX]
                )

        definition = (row or {}).get('definition') or ""
        normalized = " ".join(definition.upper().split())
        if "UNIQUE" not in normalized or "WHERE" not in normalized or "CLOSURE_DATE IS NULL" not in normalized:
            raise FatalStorageError(
                f"Partial unique index {ACTIVE_LOAN_INDEX} is missing or not partial; "
                "the one-active-loan invariant is not enforced by storage"
            )
        logger.debug(f"Verified {ACTIVE_LOAN_INDEX}: {normalized}")

    def get_migration_status(self) -> Dict[str, Any]:
        """Get detailed migration status"""
        current_version = self.get_current_version()
        pending = self.get_pending_migrations()
        applied = self.get_applied_migrations()

        return {
            "current_version": current_version,
            "latest_version": max((m.version for m in self.migrations), default=0),
            "pending_count": len(pending),
            "applied_count": len(applied),
            "pending_migrations": [
                {"version": m.version, "name": m.name} for m in pending
            ],
            "needs_migration": len(pending) > 0
        }
