"""Tests covering the SQLite bootstrap and migration helpers."""

from __future__ import annotations

import pytest
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError


def test_bootstrap_creates_expected_tables(database) -> None:
    engine = database.bootstrap_database()

    path = database.database_path()
    assert path.exists()

    with engine.begin() as connection:
        objects = {
            row[0]
            for row in connection.execute(
                text("SELECT name FROM sqlite_master WHERE type IN ('table', 'view')")
            )
        }

    assert {
        "schema_migrations",
        "query_groups",
        "canonical_queries",
        "query_samples",
        "monitoring_sessions",
        "aggregated_query_stats",
    } <= objects


def test_repeated_bootstrap_is_idempotent(database) -> None:
    first_engine = database.bootstrap_database()
    second_engine = database.bootstrap_database()

    assert first_engine is second_engine

    with first_engine.begin() as connection:
        rows = connection.execute(
            text("SELECT version FROM schema_migrations ORDER BY version")
        ).fetchall()

    versions = [row[0] for row in rows]
    expected_versions = [migration.version for migration in database.MIGRATIONS]
    assert versions == expected_versions


def test_duplicate_migration_versions_are_rejected(database) -> None:
    engine = database.get_engine()
    migrations = (
        database.Migration(version=1, statements=("SELECT 1",)),
        database.Migration(version=1, statements=("SELECT 2",)),
    )

    with pytest.raises(ValueError):
        database.run_migrations(engine, migrations)


def test_foreign_keys_are_enforced(database) -> None:
    engine = database.bootstrap_database()

    with pytest.raises(IntegrityError):
        with engine.begin() as connection:
            connection.execute(
                text(
                    """
                    INSERT INTO query_samples (
                        canonical_query_id, target_id, raw_text, raw_fingerprint,
                        calls, total_time, collected_at, last_updated_at
                    ) VALUES (999, 1, 'SELECT 1', 'abc', 1, 1.0, 'now', 'now')
                    """
                )
            )


def test_only_one_running_session_per_target(database) -> None:
    engine = database.bootstrap_database()
    insert = text(
        """
        INSERT INTO monitoring_sessions (target_id, interval_seconds, status, started_at, updated_at)
        VALUES (:target_id, 60, :status, 'now', 'now')
        """
    )

    with engine.begin() as connection:
        connection.execute(insert, {"target_id": 1, "status": "stopped"})
        connection.execute(insert, {"target_id": 1, "status": "running"})

    with pytest.raises(IntegrityError):
        with engine.begin() as connection:
            connection.execute(insert, {"target_id": 1, "status": "running"})
