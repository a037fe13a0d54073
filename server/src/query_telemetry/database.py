"""SQLite database helpers and migration runner for the telemetry store."""

from __future__ import annotations

import os
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Generator, Iterable, Sequence

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.settings import get_settings

DB_ENV_VAR = "QUERY_TELEMETRY_DB_PATH"


@dataclass(frozen=True)
class Migration:
    """Discrete schema update executed sequentially."""

    version: int
    statements: Sequence[str]
    description: str = ""


# NOTE: Keep migrations sorted by version to guarantee deterministic order.
MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="bootstrap query groups table",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS query_groups (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                target_id INTEGER NOT NULL,
                name TEXT NOT NULL,
                description TEXT,
                is_known INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_query_groups_target
                ON query_groups (target_id)
            """,
        ),
    ),
    Migration(
        version=2,
        description="add canonical queries table",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS canonical_queries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                target_id INTEGER NOT NULL,
                canonical_text TEXT NOT NULL,
                canonical_fingerprint TEXT NOT NULL,
                first_seen_at TEXT NOT NULL,
                last_seen_at TEXT NOT NULL,
                is_known INTEGER NOT NULL DEFAULT 0,
                group_id INTEGER REFERENCES query_groups(id),
                distinct_variant_count INTEGER NOT NULL DEFAULT 0,
                instance_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_canonical_queries_fingerprint
                ON canonical_queries (target_id, canonical_fingerprint)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_canonical_queries_text
                ON canonical_queries (target_id, canonical_text)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_canonical_queries_last_seen
                ON canonical_queries (target_id, last_seen_at)
            """,
        ),
    ),
    Migration(
        version=3,
        description="add query samples table",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS query_samples (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                canonical_query_id INTEGER NOT NULL
                    REFERENCES canonical_queries(id) ON DELETE CASCADE,
                target_id INTEGER NOT NULL,
                raw_text TEXT NOT NULL,
                raw_fingerprint TEXT NOT NULL,
                calls INTEGER NOT NULL,
                total_time REAL NOT NULL,
                min_time REAL,
                max_time REAL,
                mean_time REAL,
                collected_at TEXT NOT NULL,
                last_updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_query_samples_fingerprint
                ON query_samples (target_id, raw_fingerprint)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_query_samples_canonical
                ON query_samples (canonical_query_id)
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_query_samples_last_updated
                ON query_samples (last_updated_at)
            """,
        ),
    ),
    Migration(
        version=4,
        description="track monitoring sessions",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS monitoring_sessions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                target_id INTEGER NOT NULL,
                interval_seconds INTEGER NOT NULL,
                scheduled_end_time TEXT,
                status TEXT NOT NULL,
                started_at TEXT NOT NULL,
                stopped_at TEXT,
                last_run_at TEXT,
                updated_at TEXT NOT NULL
            )
            """,
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_monitoring_sessions_running
                ON monitoring_sessions (target_id)
                WHERE status = 'running'
            """,
            """
            CREATE INDEX IF NOT EXISTS idx_monitoring_sessions_target
                ON monitoring_sessions (target_id, started_at)
            """,
        ),
    ),
    Migration(
        version=5,
        description="add aggregated query statistics view",
        statements=(
            """
            CREATE VIEW IF NOT EXISTS aggregated_query_stats AS
            SELECT
                cq.id AS canonical_query_id,
                cq.target_id AS target_id,
                COUNT(qs.id) AS sample_count,
                COALESCE(SUM(qs.calls), 0) AS total_calls,
                COALESCE(SUM(qs.total_time), 0.0) AS total_time,
                MIN(qs.min_time) AS min_time,
                MAX(qs.max_time) AS max_time,
                SUM(qs.total_time) / NULLIF(SUM(qs.calls), 0) AS avg_time,
                MIN(qs.collected_at) AS first_collected_at,
                MAX(qs.last_updated_at) AS last_updated_at
            FROM canonical_queries cq
            LEFT JOIN query_samples qs ON qs.canonical_query_id = cq.id
            GROUP BY cq.id, cq.target_id
            """,
        ),
    ),
)

_engine: Engine | None = None
_engine_path: Path | None = None
_SessionLocal: sessionmaker[Session] | None = None


def _resolve_database_path(path: Path | None = None) -> Path:
    env_override = os.getenv(DB_ENV_VAR)
    if path is not None:
        resolved = path
    elif env_override:
        resolved = Path(env_override)
    else:
        resolved = get_settings().database_path
    resolved = resolved.expanduser()
    if not resolved.is_absolute():
        resolved = Path(__file__).resolve().parents[3] / resolved
    resolved.parent.mkdir(parents=True, exist_ok=True)
    return resolved


def _configure_sqlite_connection(dbapi_connection: Any, _: Any) -> None:
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys = ON")
        cursor.execute("PRAGMA journal_mode = WAL")
    finally:
        cursor.close()


def get_engine(path: Path | None = None) -> Engine:
    """Return a cached SQLAlchemy engine bound to the configured SQLite database."""

    global _engine, _engine_path, _SessionLocal
    db_path = _resolve_database_path(path)
    if _engine is None or _engine_path != db_path:
        _engine = create_engine(
            f"sqlite:///{db_path}",
            echo=False,
            future=True,
            connect_args={
                "check_same_thread": False,
                "timeout": get_settings().busy_timeout_seconds,
            },
        )
        event.listen(_engine, "connect", _configure_sqlite_connection)
        _engine_path = db_path
        _SessionLocal = None
    return _engine


def get_sessionmaker(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a cached session factory bound to the engine."""

    global _SessionLocal
    if engine is None:
        engine = get_engine()
    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=engine,
            autoflush=False,
            expire_on_commit=False,
            future=True,
        )
    return _SessionLocal


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Provide a transactional scope for interacting with the database."""

    session_factory = get_sessionmaker()
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _ensure_migrations_table(engine: Engine) -> None:
    with engine.begin() as connection:
        connection.exec_driver_sql(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                description TEXT,
                applied_at TEXT NOT NULL
            )
            """
        )


def _applied_versions(engine: Engine) -> set[int]:
    with engine.begin() as connection:
        rows = connection.execute(text("SELECT version FROM schema_migrations"))
        return {int(row[0]) for row in rows}


def run_migrations(engine: Engine | None = None, migrations: Iterable[Migration] | None = None) -> None:
    """Apply any pending migrations against the configured database."""

    if engine is None:
        engine = get_engine()
    if migrations is None:
        migrations = MIGRATIONS

    migrations_seq = tuple(migrations)
    _ensure_migrations_table(engine)

    pending_versions = {migration.version for migration in migrations_seq}
    if len(pending_versions) != len(migrations_seq):
        raise ValueError("Duplicate migration versions detected")

    applied = _applied_versions(engine)
    ordered = sorted(migrations_seq, key=lambda item: item.version)

    with engine.begin() as connection:
        for migration in ordered:
            if migration.version in applied:
                continue
            for statement in migration.statements:
                connection.exec_driver_sql(statement)
            connection.execute(
                text(
                    """
                    INSERT INTO schema_migrations (version, description, applied_at)
                    VALUES (:version, :description, :applied_at)
                    """
                ),
                {
                    "version": migration.version,
                    "description": migration.description,
                    "applied_at": datetime.now(tz=timezone.utc).isoformat(),
                },
            )


def bootstrap_database(path: Path | None = None) -> Engine:
    """Ensure the SQLite database exists and is migrated to the latest schema."""

    engine = get_engine(path)
    run_migrations(engine)
    return engine


def database_path() -> Path:
    """Expose the resolved database path for logging and diagnostics."""

    return _resolve_database_path()


def reset_state() -> None:
    """Clear cached engine/session factories (useful for tests)."""

    global _engine, _engine_path, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _engine_path = None
    _SessionLocal = None


__all__ = [
    "MIGRATIONS",
    "Migration",
    "DB_ENV_VAR",
    "bootstrap_database",
    "database_path",
    "get_engine",
    "get_sessionmaker",
    "run_migrations",
    "session_scope",
    "reset_state",
]
