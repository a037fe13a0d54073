from __future__ import annotations

import importlib
from pathlib import Path

import pytest

from app.core.settings import reload_settings
from query_telemetry.targets import reload_targets


@pytest.fixture()
def database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    db_path = tmp_path / "telemetry.db"
    monkeypatch.setenv("QUERY_TELEMETRY_DB_PATH", str(db_path))
    monkeypatch.setenv("QUERY_TELEMETRY_TARGETS_PATH", str(tmp_path / "targets.json"))
    reload_settings()
    reload_targets()

    import query_telemetry.database as database_module

    database = importlib.reload(database_module)
    database.reset_state()
    try:
        yield database
    finally:
        database.reset_state()
        reload_settings()
        reload_targets()


@pytest.fixture()
def engine(database):
    return database.bootstrap_database()


@pytest.fixture()
def scheduler(engine, monkeypatch: pytest.MonkeyPatch):
    from query_telemetry.scheduler import MonitoringScheduler
    from query_telemetry.sources import SourceRegistry
    from query_telemetry.targets import TargetManifest

    monkeypatch.setenv("QUERY_TELEMETRY_STOP_TIMEOUT", "2")
    reload_settings()
    instance = MonitoringScheduler(SourceRegistry(TargetManifest()))
    try:
        yield instance
    finally:
        instance.shutdown()
