"""Tests for retention pruning."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import text

from query_telemetry.models import SampleStats, to_db_timestamp
from query_telemetry.pruner import prune
from query_telemetry.store import get_canonical_query, ingest_sample, list_canonical_queries

BASE_TS = datetime(2025, 4, 10, 12, 0, tzinfo=timezone.utc)


def _count_samples(engine, target_id: int) -> int:
    with engine.begin() as connection:
        return connection.execute(
            text("SELECT COUNT(*) FROM query_samples WHERE target_id = :target_id"),
            {"target_id": target_id},
        ).scalar_one()


def test_zero_horizon_removes_samples_but_keeps_canonicals(engine) -> None:
    first = ingest_sample(1, "SELECT * FROM t WHERE id IN ($1,$2)", SampleStats(1, 1.0))
    ingest_sample(1, "SELECT * FROM t WHERE id IN ($1,$2,$3)", SampleStats(1, 1.0))
    other = ingest_sample(1, "SELECT now()", SampleStats(1, 1.0))

    deleted = prune(timedelta(0))

    assert deleted == 3
    assert _count_samples(engine, 1) == 0
    for canonical_query_id in (first.canonical_query_id, other.canonical_query_id):
        record = get_canonical_query(canonical_query_id)
        assert record.instance_count == 0
        assert record.distinct_variant_count == 0
    entries = list_canonical_queries(1)
    assert len(entries) == 2
    assert all(entry.stats.sample_count == 0 for entry in entries)


def test_prune_only_removes_samples_past_horizon(engine) -> None:
    now = BASE_TS + timedelta(days=100)
    stale = ingest_sample(1, "SELECT * FROM t WHERE id = $1", SampleStats(1, 1.0), now=BASE_TS)
    ingest_sample(1, "SELECT * FROM t WHERE id = $2", SampleStats(1, 1.0), now=now - timedelta(days=1))

    deleted = prune(timedelta(days=90), now=now)

    assert deleted == 1
    record = get_canonical_query(stale.canonical_query_id)
    assert (record.distinct_variant_count, record.instance_count) == (1, 1)
    with engine.begin() as connection:
        oldest = connection.execute(text("SELECT MIN(last_updated_at) FROM query_samples")).scalar_one()
    assert oldest >= to_db_timestamp(now - timedelta(days=90))


def test_prune_can_be_scoped_to_one_target(engine) -> None:
    ingest_sample(1, "SELECT 1", SampleStats(1, 1.0), now=BASE_TS)
    ingest_sample(2, "SELECT 1", SampleStats(1, 1.0), now=BASE_TS)

    deleted = prune(timedelta(days=1), target_id=2, now=BASE_TS + timedelta(days=2))

    assert deleted == 1
    assert _count_samples(engine, 1) == 1
    assert _count_samples(engine, 2) == 0


def test_prune_with_nothing_to_delete(engine) -> None:
    ingest_sample(1, "SELECT 1", SampleStats(1, 1.0))

    assert prune(timedelta(days=90)) == 0


def test_negative_horizon_is_rejected(engine) -> None:
    with pytest.raises(ValueError):
        prune(timedelta(seconds=-1))
