"""Database connection management."""
import sqlite3
import os
from pathlib import Path
from contextlib import contextmanager
from typing import Dict, Generator, List, Tuple
from copilot.core.config import get_settings
from copilot.core.logging import get_logger

logger = get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

# Tables and columns the turn handler depends on
REQUIRED_COLUMNS = {
    "conversations": ["session_id", "title", "state_json", "created_at", "updated_at"],
    "messages": ["message_id", "session_id", "role", "content", "draft_id", "render_hints_json", "idempotency_key"],
    "drafts": ["draft_id", "session_id", "instrument", "market", "status", "sizing_basis", "details_json"],
}


def _parse_db_url(url: str) -> str:
    """Parse DATABASE_URL to SQLite file path."""
    if url.startswith("sqlite:///"):
        return url.replace("sqlite:///", "")
    elif url.startswith("sqlite://"):
        return url.replace("sqlite://", "")
    else:
        return url


@contextmanager
def get_conn() -> Generator[sqlite3.Connection, None, None]:
    """Get database connection context manager.

    Commits on clean exit, rolls back on any exception.
    """
    settings = get_settings()
    db_path = _parse_db_url(settings.database_url)

    # Ensure directory exists
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute("PRAGMA busy_timeout = 30000")
    conn.execute("PRAGMA foreign_keys = ON")

    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def validate_schema() -> Tuple[bool, Dict[str, List[str]]]:
    """Check that critical tables have the expected columns.

    Returns (ok, missing) where missing maps table -> missing columns.
    """
    missing_map: Dict[str, List[str]] = {}
    with get_conn() as conn:
        cursor = conn.cursor()
        for table, expected_cols in REQUIRED_COLUMNS.items():
            cursor.execute(f"PRAGMA table_info({table})")
            actual_cols = {row[1] for row in cursor.fetchall()}
            if not actual_cols:
                missing_map[table] = expected_cols
                logger.warning("Schema validation: table '%s' does not exist", table)
                continue
            missing = [c for c in expected_cols if c not in actual_cols]
            if missing:
                missing_map[table] = missing
                logger.warning("Schema validation: table '%s' missing columns: %s", table, missing)
    return len(missing_map) == 0, missing_map


def get_schema_status() -> Dict:
    """Describe DB path, schema health and migration status (health endpoint)."""
    settings = get_settings()
    result = {
        "db_path": os.path.abspath(_parse_db_url(settings.database_url)),
        "schema_ok": False,
        "applied_migrations": [],
        "pending_migrations": [],
        "missing_columns": {},
    }

    with get_conn() as conn:
        cursor = conn.cursor()
        cursor.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'schema_migrations'"
        )
        if cursor.fetchone():
            cursor.execute("SELECT filename FROM schema_migrations ORDER BY id ASC")
            result["applied_migrations"] = [row["filename"] for row in cursor.fetchall()]

    all_files = sorted(f.name for f in MIGRATIONS_DIR.glob("*.sql"))
    applied_set = set(result["applied_migrations"])
    result["pending_migrations"] = [f for f in all_files if f not in applied_set]

    schema_ok, missing = validate_schema()
    result["schema_ok"] = schema_ok
    result["missing_columns"] = missing
    return result


def _split_statements(migration_sql: str) -> List[str]:
    """Strip -- comments and split on semicolons."""
    lines = []
    for line in migration_sql.split("\n"):
        if "--" in line:
            line = line[:line.index("--")]
        lines.append(line)
    cleaned_sql = "\n".join(lines)
    return [s.strip() for s in cleaned_sql.split(";") if s.strip()]


def init_db():
    """Initialize database with migrations (idempotent).

    Raises RuntimeError if migrations directory is not found.
    """
    if not MIGRATIONS_DIR.exists():
        raise RuntimeError(
            f"Migrations directory not found: {MIGRATIONS_DIR}. "
            "Cannot start without schema."
        )

    bootstrap_migration = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        filename TEXT NOT NULL UNIQUE,
        applied_at TEXT NOT NULL DEFAULT (datetime('now'))
    );
    """

    from copilot.core.time import now_iso

    with get_conn() as conn:
        conn.executescript(bootstrap_migration)

        migration_files = sorted(f for f in os.listdir(MIGRATIONS_DIR) if f.endswith(".sql"))

        cursor = conn.cursor()
        cursor.execute("SELECT filename FROM schema_migrations")
        applied_migrations = {row["filename"] for row in cursor.fetchall()}

        for migration_file in migration_files:
            if migration_file in applied_migrations:
                logger.debug(f"Migration {migration_file} already applied, skipping")
                continue

            with open(MIGRATIONS_DIR / migration_file, "r") as f:
                statements = _split_statements(f.read())

            executed_count = 0
            skipped_count = 0
            for statement in statements:
                try:
                    conn.execute(statement)
                    executed_count += 1
                except sqlite3.OperationalError as e:
                    error_str = str(e).lower()
                    # Skip duplicate column/index errors (idempotency)
                    if "duplicate column" in error_str or "already exists" in error_str:
                        logger.debug(f"Skipping statement in {migration_file} (already exists): {statement[:50]}...")
                        skipped_count += 1
                    else:
                        raise

            cursor.execute(
                "INSERT INTO schema_migrations (filename, applied_at) VALUES (?, ?)",
                (migration_file, now_iso())
            )
            conn.commit()

            if skipped_count > 0:
                logger.info(f"Applied migration: {migration_file} ({executed_count} statements executed, {skipped_count} skipped)")
            else:
                logger.info(f"Applied migration: {migration_file}")
