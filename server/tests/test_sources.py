"""Tests for telemetry source resolution and bounded fetches."""

from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from app.core.errors import SourceUnavailableError, UnknownTargetError
from query_telemetry.sources import (
    PgStatStatementsSource,
    SourceRegistry,
    fetch_with_timeout,
    source_executor,
)
from query_telemetry.targets import TargetManifest, reload_targets

from .fixtures import SlowSource, StaticSource, snapshot_row


class _BrokenSource:
    def fetch_snapshot(self, target_id: int):
        raise RuntimeError("connection refused")


def test_fetch_returns_rows() -> None:
    rows = [snapshot_row("SELECT 1"), snapshot_row("SELECT 2")]

    assert fetch_with_timeout(StaticSource(rows=rows), 1, 1.0) == rows


def test_fetch_timeout_becomes_source_unavailable() -> None:
    source = SlowSource()
    try:
        with pytest.raises(SourceUnavailableError) as excinfo:
            fetch_with_timeout(source, 3, 0.05)
    finally:
        source.release.set()

    assert excinfo.value.kind == "SourceUnavailable"
    assert excinfo.value.details["target_id"] == 3


def test_shared_executor_does_not_grow_on_timeouts() -> None:
    source = SlowSource()
    executor = source_executor(11)
    try:
        for _ in range(5):
            with pytest.raises(SourceUnavailableError):
                fetch_with_timeout(source, 11, 0.01, executor=executor)

        workers = [thread for thread in threading.enumerate() if thread.name.startswith("telemetry-source-11_")]
        assert len(workers) == 1
    finally:
        source.release.set()
        executor.shutdown(wait=True)


def test_unexpected_source_errors_are_wrapped() -> None:
    with pytest.raises(SourceUnavailableError) as excinfo:
        fetch_with_timeout(_BrokenSource(), 1, 1.0)

    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_registry_prefers_registered_sources() -> None:
    registry = SourceRegistry(TargetManifest())
    source = StaticSource()
    registry.register(4, source)

    assert registry.get(4) is source
    with pytest.raises(UnknownTargetError):
        registry.get(5)


def test_registry_builds_pg_sources_from_manifest(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    manifest_path = tmp_path / "targets.json"
    manifest_path.write_text(
        json.dumps(
            {
                "targets": [
                    {"id": 1, "name": "orders", "dsn": "postgresql+psycopg2://u:p@localhost/orders"},
                ]
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.setenv("QUERY_TELEMETRY_TARGETS_PATH", str(manifest_path))
    manifest = reload_targets()
    try:
        assert [target.name for target in manifest.targets] == ["orders"]
        registry = SourceRegistry()

        source = registry.get(1)

        assert isinstance(source, PgStatStatementsSource)
        assert registry.get(1) is source
        registry.clear()
    finally:
        monkeypatch.delenv("QUERY_TELEMETRY_TARGETS_PATH")
        reload_targets()


def test_missing_manifest_means_no_targets(tmp_path: Path) -> None:
    manifest = reload_targets(tmp_path / "absent.json")

    assert manifest.targets == []
    reload_targets()


def test_pg_source_bounds_connection_attempts(monkeypatch: pytest.MonkeyPatch) -> None:
    from query_telemetry import sources as sources_module

    captured: dict = {}

    def fake_create_engine(dsn: str, **kwargs):
        captured.update(kwargs, dsn=dsn)
        return object()

    monkeypatch.setattr(sources_module, "create_engine", fake_create_engine)

    PgStatStatementsSource("postgresql+psycopg2://u:p@db/orders", statement_timeout=2.5)._get_engine()
    assert captured["connect_args"] == {"connect_timeout": 3}

    PgStatStatementsSource("postgresql+psycopg2://u:p@db/orders", connect_timeout=0.2)._get_engine()
    assert captured["connect_args"] == {"connect_timeout": 1}
