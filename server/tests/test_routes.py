"""Integration-style tests for the FastAPI control surface."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from query_telemetry.models import SampleStats
from query_telemetry.store import ingest_sample

from .fixtures import FlakySource, StaticSource, snapshot_row


@pytest.fixture()
def client(database):
    from query_telemetry import main as main_module
    from query_telemetry.scheduler import monitoring_scheduler

    database.bootstrap_database()
    monitoring_scheduler.sources.register(5, StaticSource(rows=[snapshot_row("SELECT * FROM t WHERE id IN ($1)")]))
    try:
        with TestClient(main_module.app) as test_client:
            yield test_client
    finally:
        monitoring_scheduler.shutdown()
        monitoring_scheduler.sources.clear()


def test_healthcheck(client: TestClient) -> None:
    response = client.get("/api/v1/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Request-Id"]


def test_start_twice_conflicts_then_stop_and_restart(client: TestClient) -> None:
    first = client.post("/api/v1/targets/5/monitoring/start", json={"interval_seconds": 60})
    assert first.status_code == 200
    assert first.json()["session"]["status"] == "running"

    conflict = client.post("/api/v1/targets/5/monitoring/start", json={"interval_seconds": 60})
    assert conflict.status_code == 409
    error = conflict.json()["detail"]["error"]
    assert error["kind"] == "SessionStateConflict"
    assert error["message"]

    stopped = client.post("/api/v1/targets/5/monitoring/stop")
    assert stopped.status_code == 200
    assert stopped.json()["session"]["status"] == "stopped"

    again = client.post("/api/v1/targets/5/monitoring/start", json={"interval_seconds": 60})
    assert again.status_code == 200

    sessions = client.get("/api/v1/targets/5/monitoring/sessions").json()["sessions"]
    assert [session["status"] for session in sessions] == ["running", "stopped"]


def test_start_validates_payload_and_target(client: TestClient) -> None:
    invalid = client.post("/api/v1/targets/5/monitoring/start", json={"interval_seconds": 0})
    assert invalid.status_code == 422

    unknown = client.post("/api/v1/targets/77/monitoring/start", json={})
    assert unknown.status_code == 404
    assert unknown.json()["detail"]["error"]["kind"] == "UnknownTarget"


def test_stop_without_session_conflicts(client: TestClient) -> None:
    response = client.post("/api/v1/targets/8/monitoring/stop")

    assert response.status_code == 409
    assert response.json()["detail"]["error"]["kind"] == "SessionStateConflict"


def test_manual_run_collects_snapshot(client: TestClient) -> None:
    response = client.post("/api/v1/targets/5/monitoring/run")

    assert response.status_code == 200
    body = response.json()
    assert body["processed"] == 1
    assert body["new_canonicals"] == 1

    queries = client.get("/api/v1/targets/5/queries").json()["queries"]
    assert [query["canonical_text"] for query in queries] == ["SELECT * FROM t WHERE id IN ($?)"]
    assert queries[0]["stats"]["sample_count"] == 1


def test_manual_run_reports_unavailable_source(client: TestClient) -> None:
    from query_telemetry.scheduler import monitoring_scheduler

    monitoring_scheduler.sources.register(6, FlakySource(failures=1))

    response = client.post("/api/v1/targets/6/monitoring/run")

    assert response.status_code == 503
    assert response.json()["detail"]["error"]["kind"] == "SourceUnavailable"


def test_query_listing_filters(client: TestClient) -> None:
    base = datetime(2025, 4, 10, 12, 0, tzinfo=timezone.utc)
    known = ingest_sample(5, "SELECT * FROM users WHERE id = $1", SampleStats(1, 1.0), now=base)
    other = ingest_sample(5, "SELECT * FROM orders WHERE id = $1", SampleStats(1, 1.0), now=base + timedelta(days=1))
    client.patch(f"/api/v1/queries/{known.canonical_query_id}", json={"is_known": True})

    def ids(params: dict[str, str]) -> list[int]:
        response = client.get("/api/v1/targets/5/queries", params=params)
        assert response.status_code == 200
        return [query["id"] for query in response.json()["queries"]]

    assert ids({}) == [other.canonical_query_id, known.canonical_query_id]
    assert ids({"include_known": "false"}) == [other.canonical_query_id]
    assert ids({"known_only": "true"}) == [known.canonical_query_id]
    assert ids({"search": "users"}) == [known.canonical_query_id]
    assert ids({"group_id": "ungrouped", "limit": "1"}) == [other.canonical_query_id]
    assert ids({"start": (base + timedelta(hours=1)).isoformat()}) == [other.canonical_query_id]

    bad_group = client.get("/api/v1/targets/5/queries", params={"group_id": "abc"})
    assert bad_group.status_code == 422
    assert bad_group.json()["detail"]["error"]["kind"] == "ValidationError"
    assert bad_group.json()["detail"]["error"]["details"] == {"group_id": "abc"}
    bad_range = client.get(
        "/api/v1/targets/5/queries",
        params={"start": base.isoformat(), "end": (base - timedelta(days=1)).isoformat()},
    )
    assert bad_range.status_code == 422
    assert bad_range.json()["detail"]["error"]["kind"] == "ValidationError"
    assert bad_range.json()["detail"]["error"]["message"]


def test_classification_and_groups(client: TestClient) -> None:
    result = ingest_sample(5, "SELECT 1", SampleStats(1, 1.0))

    created = client.post("/api/v1/targets/5/groups", json={"name": "Health", "is_known": True})
    assert created.status_code == 201
    group_id = created.json()["group"]["id"]
    assert [group["name"] for group in client.get("/api/v1/targets/5/groups").json()["groups"]] == ["Health"]

    assigned = client.patch(
        f"/api/v1/queries/{result.canonical_query_id}", json={"is_known": True, "group_id": group_id}
    )
    assert assigned.status_code == 200
    assert assigned.json()["query"]["group_id"] == group_id
    assert assigned.json()["query"]["is_known"] is True

    untouched = client.patch(f"/api/v1/queries/{result.canonical_query_id}", json={})
    assert untouched.json()["query"]["group_id"] == group_id

    cleared = client.patch(f"/api/v1/queries/{result.canonical_query_id}", json={"group_id": None})
    assert cleared.json()["query"]["group_id"] is None
    assert cleared.json()["query"]["is_known"] is True

    missing_group = client.patch(f"/api/v1/queries/{result.canonical_query_id}", json={"group_id": 999})
    assert missing_group.status_code == 422
    assert missing_group.json()["detail"]["error"]["kind"] == "InvalidClassification"

    missing_query = client.patch("/api/v1/queries/999", json={"is_known": True})
    assert missing_query.status_code == 404

    blank = client.post("/api/v1/targets/5/groups", json={"name": "   "})
    assert blank.status_code == 422
    assert blank.json()["detail"]["error"]["kind"] == "ValidationError"


def test_samples_endpoint(client: TestClient) -> None:
    result = ingest_sample(5, "SELECT * FROM t WHERE id IN ($1,$2)", SampleStats(2, 3.0))
    ingest_sample(5, "SELECT * FROM t WHERE id IN ($1)", SampleStats(1, 1.0))

    response = client.get(f"/api/v1/queries/{result.canonical_query_id}/samples")

    assert response.status_code == 200
    assert len(response.json()["samples"]) == 2
    missing = client.get("/api/v1/queries/999/samples")
    assert missing.status_code == 404
    assert missing.json()["detail"]["error"]["kind"] == "NotFound"
    assert missing.json()["detail"]["error"]["details"] == {"canonical_query_id": 999}


def test_maintenance_endpoints(client: TestClient) -> None:
    ingest_sample(5, "SELECT 1", SampleStats(1, 1.0))

    reconciled = client.post("/api/v1/targets/5/maintenance/reconcile")
    assert reconciled.json() == {"target_id": 5, "merged_groups": 0}

    pruned = client.post("/api/v1/targets/5/maintenance/prune", json={"retention_days": 0})
    assert pruned.json() == {"target_id": 5, "deleted": 1}

    queries = client.get("/api/v1/targets/5/queries").json()["queries"]
    assert queries[0]["instance_count"] == 0
