"""
Database connection manager and migration utilities for SQLite storage.

- Connection management with PRAGMA configuration
- Transaction context manager
- Migration runner with backup automation
- Schema verification and integrity checks
- Audit log helpers

Design Principles:
- Foreign keys enforced (PRAGMA foreign_keys=ON)
- WAL journal mode for concurrent read/write
- Automatic backups before migrations
- Idempotent migration application
"""

import sqlite3
import shutil
import time
from pathlib import Path
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List, Tuple, Callable, Any, Dict
import hashlib
import functools

from .utils.logging_config import get_logger
from .utils.paths import get_db_path, get_migrations_dir, get_backup_dir

logger = get_logger(__name__)


# ============================================================
# Configuration Constants
# ============================================================

DB_PATH: Path = get_db_path()
MIGRATIONS_DIR: Path = get_migrations_dir()
BACKUP_DIR: Path = get_backup_dir()

# Connection PRAGMAs
PRAGMA_CONFIG = {
    "foreign_keys": "ON",           # Enforce FK constraints
    "journal_mode": "WAL",          # Write-Ahead Logging for concurrency
    "synchronous": "NORMAL",
    "temp_store": "MEMORY",
    "cache_size": -64000,           # 64MB cache (negative = KB)
    "busy_timeout": 5000,           # Wait 5s for lock (milliseconds)
}

# Tables every healthy database must contain
EXPECTED_TABLES = {
    "schema_version", "orders", "user_device_fingerprints", "fraud_detection_sessions",
    "fraud_signals", "fraud_detection_rules", "fraud_reviews", "user_trust_scores",
    "transaction_assessments", "audit_log",
}

# Minimum schema version the application code expects
MIN_SCHEMA_VERSION = 2


# Retry configuration for locked database
RETRY_MAX_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.5  # seconds
RETRY_MAX_DELAY = 5.0   # seconds


# ============================================================
# Retry Logic
# ============================================================

def exponential_backoff(attempt: int, base_delay: float = RETRY_BASE_DELAY, max_delay: float = RETRY_MAX_DELAY) -> float:
    """Delay before retry number *attempt* (0-based): 0.5, 1.0, 2.0, 4.0, then capped."""
    return min(base_delay * (2 ** attempt), max_delay)


def _is_lock_error(exc: sqlite3.OperationalError) -> bool:
    return "locked" in str(exc).lower()


def retry_on_locked(max_attempts: int = RETRY_MAX_ATTEMPTS, sleep: Callable[[float], None] = time.sleep):
    """
    Retry the decorated call while SQLite reports the database as locked.

    Meant for reads and keyed upserts. A plain INSERT that is retried after a
    partial failure could be written twice. Any other OperationalError is
    re-raised immediately; running out of attempts raises an
    OperationalError chained to the last lock error.
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            attempt = 0
            while True:
                try:
                    return func(*args, **kwargs)
                except sqlite3.OperationalError as e:
                    if not _is_lock_error(e):
                        raise
                    attempt += 1
                    if attempt >= max_attempts:
                        raise sqlite3.OperationalError(
                            f"Database locked after {max_attempts} attempts in {func.__name__}: {e}"
                        ) from e
                    delay = exponential_backoff(attempt - 1)
                    logger.warning(
                        "%s: database locked, retry %d/%d in %.1fs",
                        func.__name__, attempt, max_attempts - 1, delay,
                    )
                    sleep(delay)

        return wrapper
    return decorator


# ============================================================
# Connection Management
# ============================================================

def open_connection(db_path: Optional[Path] = None) -> sqlite3.Connection:
    """
    Open a connection to the fraud store with the PRAGMAs above applied.

    Rows come back as sqlite3.Row so repositories can read columns by name.

    Raises:
        sqlite3.OperationalError: Database locked or inaccessible
        sqlite3.DatabaseError: Corrupted database file
    """
    if db_path is None:
        db_path = DB_PATH

    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        conn = sqlite3.connect(str(db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row

        for pragma, value in PRAGMA_CONFIG.items():
            conn.execute(f"PRAGMA {pragma}={value}")

        if conn.execute("PRAGMA foreign_keys").fetchone()[0] != 1:
            conn.close()
            raise RuntimeError("Failed to enable foreign keys (PRAGMA foreign_keys=ON)")

        return conn

    except sqlite3.OperationalError as e:
        if "locked" in str(e).lower():
            raise sqlite3.OperationalError(
                f"Fraud database {db_path} is locked by another writer. "
                f"Wait for the running analysis to finish and retry."
            ) from e
        raise

    except sqlite3.DatabaseError as e:
        raise sqlite3.DatabaseError(
            f"Fraud database {db_path} is corrupted. "
            f"Recovery options:\n"
            f"  1. Restore the newest file from the backups/ folder next to it\n"
            f"  2. Run integrity check: craftlocal-fraud db verify"
        ) from e


@contextmanager
def transaction(conn: sqlite3.Connection, isolation_level: str = "DEFERRED"):
    """
    Transaction context manager with automatic commit/rollback.

    Usage:
        >>> with transaction(conn) as cur:
        ...     cur.execute("UPDATE fraud_signals SET false_positive = 1 WHERE id = ?", (sid,))
        ...     # COMMIT on success, ROLLBACK on exception

    Isolation Levels:
    - DEFERRED: Acquire lock on first write (default)
    - IMMEDIATE: Acquire lock on BEGIN (prevents writer starvation)
    - EXCLUSIVE: Acquire lock on BEGIN, block all readers
    """
    cursor = conn.cursor()

    try:
        cursor.execute(f"BEGIN {isolation_level}")
        yield cursor
        conn.commit()

    except Exception as e:
        conn.rollback()
        raise RuntimeError(f"Transaction failed and rolled back: {e}") from e


# ============================================================
# Migration Management
# ============================================================

def get_current_schema_version(conn: sqlite3.Connection) -> int:
    """Current schema version (0 if schema_version table doesn't exist)."""
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT MAX(version) FROM schema_version")
        result = cursor.fetchone()
        return result[0] if result[0] is not None else 0

    except sqlite3.OperationalError:
        return 0


def get_pending_migrations(conn: sqlite3.Connection, migrations_dir: Optional[Path] = None) -> List[Tuple[int, Path]]:
    """
    List pending migration scripts as (version, filepath), sorted by version.

    Naming convention: NNN_description.sql (001_initial_schema.sql ...)
    """
    current_version = get_current_schema_version(conn)
    migrations_dir = migrations_dir or MIGRATIONS_DIR

    if not migrations_dir.exists():
        return []

    pending = []
    for migration_file in sorted(migrations_dir.glob("*.sql")):
        version_str = migration_file.stem.split("_")[0]

        try:
            version = int(version_str)
        except ValueError:
            logger.warning("Skipping invalid migration filename: %s", migration_file.name)
            continue

        if version > current_version:
            pending.append((version, migration_file))

    return sorted(pending, key=lambda x: x[0])


def database_file(conn: sqlite3.Connection) -> Optional[Path]:
    """Path of the main database file behind *conn* (None for in-memory)."""
    for row in conn.execute("PRAGMA database_list").fetchall():
        if row[1] == "main" and row[2]:
            return Path(row[2])
    return None


def backup_database(db_path: Path, backup_reason: str = "migration", backup_dir: Optional[Path] = None) -> Path:
    """
    Create a timestamped backup of the database, including WAL/SHM side files.

    Backup naming: <stem>_YYYYMMDD_HHMMSS_<reason>.db plus a .manifest listing
    the files copied.
    """
    if not db_path.exists():
        raise FileNotFoundError(f"Database {db_path} does not exist")

    if backup_dir is None:
        backup_dir = BACKUP_DIR

    backup_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    backup_filename = f"{db_path.stem}_{timestamp}_{backup_reason}.db"
    backup_path = backup_dir / backup_filename

    shutil.copy(db_path, backup_path)
    files_backed_up = [backup_path.name]

    for suffix in ("-wal", "-shm"):
        side_path = Path(str(db_path) + suffix)
        if side_path.exists():
            side_backup = Path(str(backup_path) + suffix)
            shutil.copy(side_path, side_backup)
            files_backed_up.append(side_backup.name)

    manifest_path = Path(str(backup_path) + ".manifest")
    with open(manifest_path, "w", encoding="utf-8") as f:
        f.write("# Backup Manifest\n")
        f.write(f"# Created: {datetime.now().isoformat()}\n")
        f.write(f"# Reason: {backup_reason}\n")
        f.write(f"# Source: {db_path}\n")
        f.write("#\n")
        for filename in files_backed_up:
            f.write(f"{filename}\n")

    logger.info("Backup created: %s", backup_path)
    return backup_path


def cleanup_old_backups(max_backups: int = 10, backup_dir: Optional[Path] = None) -> int:
    """
    Keep only the most recent *max_backups* backups; returns the number deleted.

    Associated WAL/SHM/manifest files are deleted with each backup.
    """
    backup_dir = backup_dir or BACKUP_DIR
    if not backup_dir.exists():
        return 0

    backup_files = sorted(
        backup_dir.glob("*.db"),
        key=lambda f: f.stat().st_mtime,
        reverse=True,
    )

    if len(backup_files) <= max_backups:
        return 0

    deleted_count = 0
    for backup_file in backup_files[max_backups:]:
        try:
            backup_file.unlink()
            deleted_count += 1

            for suffix in ("-wal", "-shm", ".manifest"):
                side_file = Path(str(backup_file) + suffix)
                if side_file.exists():
                    side_file.unlink()

        except OSError as e:
            logger.warning("Could not delete backup %s: %s", backup_file.name, e)

    return deleted_count


def calculate_file_checksum(filepath: Path) -> str:
    """SHA256 checksum of a migration file."""
    sha256 = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            sha256.update(chunk)
    return sha256.hexdigest()


def apply_migrations(
    conn: Optional[sqlite3.Connection] = None,
    dry_run: bool = False,
    migrations_dir: Optional[Path] = None,
    backup_dir: Optional[Path] = None,
) -> int:
    """
    Apply all pending migrations to the database.

    Process (per migration):
        a. Back up the database file (skipped for a brand-new/in-memory DB)
        b. Execute the migration script (scripts wrap themselves in BEGIN...COMMIT
           and insert their schema_version row)

    Returns:
        Number of migrations applied

    Raises:
        RuntimeError: a migration failed; earlier migrations stay applied and the
        pre-migration backup path is logged.
    """
    close_after = False
    if conn is None:
        conn = open_connection()
        close_after = True

    try:
        current_version = get_current_schema_version(conn)
        pending = get_pending_migrations(conn, migrations_dir)

        if not pending:
            logger.debug("Database schema is up-to-date (version %d)", current_version)
            return 0

        if dry_run:
            for version, filepath in pending:
                logger.info("Pending migration [%d] %s", version, filepath.name)
            return 0

        db_file = database_file(conn)
        applied_count = 0

        for version, migration_path in pending:
            backup_path = None
            if db_file is not None and db_file.exists() and get_current_schema_version(conn) > 0:
                backup_path = backup_database(db_file, f"v{version - 1}_pre_migration", backup_dir)

            with open(migration_path, "r", encoding="utf-8") as f:
                migration_sql = f.read()

            checksum = calculate_file_checksum(migration_path)

            try:
                conn.executescript(migration_sql)
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.rollback()
                logger.error(
                    "Migration %d (%s) failed: %s. Backup: %s",
                    version, migration_path.name, e, backup_path,
                )
                raise RuntimeError(f"Migration {version} failed. Database unchanged.") from e

            logger.info("Migration %d applied (%s, sha256=%s)", version, migration_path.name, checksum[:12])
            applied_count += 1

        return applied_count

    finally:
        if close_after:
            conn.close()


# ============================================================
# Health Checks
# ============================================================

def _table_names(conn: sqlite3.Connection) -> List[str]:
    rows = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
    ).fetchall()
    return [row[0] for row in rows]


def _foreign_keys_on(conn: sqlite3.Connection) -> bool:
    return conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1


def verify_schema(conn: sqlite3.Connection) -> bool:
    """True when every fraud table exists, foreign keys are on and a migration has run."""
    missing = EXPECTED_TABLES.difference(_table_names(conn))
    if missing:
        logger.error("Missing tables: %s", ", ".join(sorted(missing)))
        return False

    if not _foreign_keys_on(conn):
        logger.error("Foreign keys are not enabled")
        return False

    if get_current_schema_version(conn) == 0:
        logger.error("Schema version is 0 (no migrations applied)")
        return False

    return True


def integrity_check(conn: sqlite3.Connection) -> bool:
    """PRAGMA integrity_check followed by PRAGMA foreign_key_check."""
    problems = [row[0] for row in conn.execute("PRAGMA integrity_check").fetchall()]
    if problems != ["ok"]:
        for problem in problems:
            logger.error("Integrity check: %s", problem)
        return False

    violations = conn.execute("PRAGMA foreign_key_check").fetchall()
    for table, rowid, parent, _ in violations[:10]:
        logger.error("Foreign key violation: table=%s rowid=%s parent=%s", table, rowid, parent)
    return not violations


def get_database_stats(conn: sqlite3.Connection) -> Dict[str, Any]:
    """Schema version, table/index counts, file size and per-table row counts."""
    tables = _table_names(conn)
    index_count = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='index' AND name NOT LIKE 'sqlite_%'"
    ).fetchone()[0]

    stats: Dict[str, Any] = {
        "schema_version": get_current_schema_version(conn),
        "tables_count": len(tables),
        "indices_count": index_count,
        "row_counts": {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0] for table in tables
        },
    }

    db_file = database_file(conn)
    if db_file is not None and db_file.exists():
        stats["db_size_mb"] = round(db_file.stat().st_size / (1024 * 1024), 2)

    return stats


def run_startup_checks(conn: sqlite3.Connection) -> bool:
    """
    Checks run before the engine is handed a connection.

    Integrity and foreign keys must pass and at least one migration must be
    applied. A schema older than MIN_SCHEMA_VERSION only logs a warning.
    """
    healthy = integrity_check(conn)

    version = get_current_schema_version(conn)
    if version == 0:
        logger.error("Schema version is 0 (no migrations applied); run 'craftlocal-fraud db migrate'")
        healthy = False
    elif version < MIN_SCHEMA_VERSION:
        logger.warning("Schema version is %d, migrations may be pending", version)

    if not _foreign_keys_on(conn):
        logger.error("Foreign keys are NOT enabled")
        healthy = False

    return healthy


# ============================================================
# Initialization Helper
# ============================================================

def initialize_database(db_path: Optional[Path] = None, force: bool = False) -> sqlite3.Connection:
    """
    Create or open the database, apply pending migrations, run startup checks.

    Args:
        db_path: Database file (default: data/fraud.db)
        force: If True, delete the existing database first

    Returns:
        Open connection with the current schema

    Raises:
        RuntimeError: startup checks failed
    """
    db_path = db_path or DB_PATH

    if force and db_path.exists():
        logger.warning("Deleting existing database: %s", db_path)
        db_path.unlink()

    conn = open_connection(db_path)
    apply_migrations(conn, backup_dir=db_path.parent / "backups")

    if not run_startup_checks(conn):
        conn.close()
        raise RuntimeError("Startup checks failed - database is unhealthy")

    return conn


# ============================================================
# Audit Logging
# ============================================================

def log_audit_event(
    conn: sqlite3.Connection,
    operation: str,
    details: str = "",
    user_id: Optional[str] = None,
    actor: str = "system",
) -> int:
    """Record an operator action (review, rule toggle, feedback) and commit; returns audit_id."""
    cursor = conn.execute(
        "INSERT INTO audit_log (operation, details, user_id, actor) VALUES (?, ?, ?, ?)",
        (operation, details, user_id, actor),
    )
    conn.commit()
    return cursor.lastrowid


def get_audit_log(
    conn: sqlite3.Connection,
    user_id: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 100,
) -> List[Dict[str, Any]]:
    """Audit entries, newest first, optionally narrowed to one user and/or operation."""
    filters = []
    params: List[Any] = []
    if user_id is not None:
        filters.append("user_id = ?")
        params.append(user_id)
    if operation is not None:
        filters.append("operation = ?")
        params.append(operation)

    where = f"WHERE {' AND '.join(filters)}" if filters else ""
    rows = conn.execute(
        f"SELECT audit_id, timestamp, operation, user_id, details, actor FROM audit_log {where} "
        f"ORDER BY timestamp DESC, audit_id DESC LIMIT ?",
        (*params, limit),
    ).fetchall()
    return [dict(row) for row in rows]
