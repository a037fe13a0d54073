"""Concurrent ingestion of the same never-seen statement."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

from sqlalchemy import text

from query_telemetry.models import SampleStats
from query_telemetry.store import ingest_sample


def _ingest_together(raw_texts: list[str], target_id: int = 1):
    barrier = threading.Barrier(len(raw_texts))

    def worker(raw_text: str):
        barrier.wait()
        return ingest_sample(target_id, raw_text, SampleStats(calls=1, total_time=1.0))

    with ThreadPoolExecutor(max_workers=len(raw_texts)) as pool:
        return list(pool.map(worker, raw_texts))


def test_concurrent_identical_ingestions_create_one_row_each(engine) -> None:
    raw = "SELECT * FROM invoices WHERE id IN ($1,$2,$3)"

    results = _ingest_together([raw, raw])

    assert {result.canonical_query_id for result in results} == {results[0].canonical_query_id}
    assert sum(result.is_new_canonical for result in results) == 1
    assert sum(result.is_new_sample for result in results) == 1
    with engine.begin() as connection:
        assert connection.execute(text("SELECT COUNT(*) FROM canonical_queries")).scalar_one() == 1
        assert connection.execute(text("SELECT COUNT(*) FROM query_samples")).scalar_one() == 1


def test_concurrent_variants_attach_to_one_canonical(engine) -> None:
    raw_texts = [
        "SELECT * FROM invoices WHERE id IN ($1)",
        "SELECT * FROM invoices WHERE id IN ($1,$2)",
        "SELECT * FROM invoices WHERE id IN ($1,$2,$3)",
        "SELECT * FROM invoices WHERE id IN ($1,$2,$3,$4)",
    ]

    results = _ingest_together(raw_texts)

    assert len({result.canonical_query_id for result in results}) == 1
    with engine.begin() as connection:
        row = connection.execute(
            text("SELECT COUNT(*), MAX(distinct_variant_count), MAX(instance_count) FROM canonical_queries")
        ).one()
    assert tuple(row) == (1, 4, 4)
