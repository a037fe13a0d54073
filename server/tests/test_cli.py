"""Tests for the operator command line."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import pytest

from query_telemetry.cli import main
from query_telemetry.models import SampleStats
from query_telemetry.store import ingest_sample

from .fixtures import insert_canonical

BASE_TS = datetime(2025, 4, 10, 12, 0, tzinfo=timezone.utc)


def _last_json(capsys: pytest.CaptureFixture[str]) -> dict:
    out = capsys.readouterr().out
    start = out.rindex("\n{\n") + 1 if "\n{\n" in out else out.index("{\n")
    return json.loads(out[start:])


def test_migrate_and_status(database, capsys: pytest.CaptureFixture[str]) -> None:
    assert main(["migrate"]) == 0
    assert _last_json(capsys)["status"] == "migrated"

    ingest_sample(1, "SELECT 1", SampleStats(1, 1.0))
    assert main(["status"]) == 0
    payload = _last_json(capsys)
    assert payload["counts"]["canonical_queries"] == 1
    assert payload["counts"]["query_samples"] == 1
    assert payload["running_sessions"] == []


def test_prune_command(engine, capsys: pytest.CaptureFixture[str]) -> None:
    ingest_sample(1, "SELECT 1", SampleStats(1, 1.0), now=BASE_TS)
    ingest_sample(2, "SELECT 1", SampleStats(1, 1.0), now=BASE_TS)

    assert main(["prune", "--days", "30", "--target", "1"]) == 0
    assert _last_json(capsys)["deleted"] == 1

    assert main(["prune", "--days", "0"]) == 0
    assert _last_json(capsys)["deleted"] == 1


def test_verify_exit_code_follows_duplicates(engine, capsys: pytest.CaptureFixture[str]) -> None:
    for fingerprint_value in ("a", "b"):
        insert_canonical(
            engine,
            target_id=1,
            canonical_text="SELECT $?",
            canonical_fingerprint=fingerprint_value,
            last_seen_at=BASE_TS,
        )

    assert main(["verify", "--target", "1"]) == 1
    report = _last_json(capsys)
    assert report["ok"] is False

    assert main(["reconcile", "--target", "1"]) == 0
    assert _last_json(capsys)["merged_groups"] == 1

    assert main(["verify", "--target", "1"]) == 0
    assert _last_json(capsys)["canonical_count"] == 1


def test_recanonicalize_and_audit_commands(engine, capsys: pytest.CaptureFixture[str]) -> None:
    ingest_sample(1, "SELECT * FROM t WHERE id IN ($1,$2)", SampleStats(1, 1.0), now=BASE_TS + timedelta(days=1))

    assert main(["recanonicalize", "--target", "1"]) == 0
    assert _last_json(capsys)["samples_moved"] == 0

    assert main(["audit", "--target", "1", "--dry-run"]) == 0
    payload = _last_json(capsys)
    assert payload["drifts"] == []
    assert payload["repaired"] is False


def test_target_is_required_for_repairs(database) -> None:
    with pytest.raises(SystemExit):
        main(["reconcile"])
