from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

from app.core.errors import SourceUnavailableError
from query_telemetry.models import SampleStats, SnapshotRow, to_db_timestamp


def snapshot_row(raw_text: str, *, calls: int = 1, total_time: float = 1.0) -> SnapshotRow:
    return SnapshotRow(
        raw_text=raw_text,
        stats=SampleStats(
            calls=calls,
            total_time=total_time,
            min_time=total_time / max(calls, 1),
            max_time=total_time / max(calls, 1),
            mean_time=total_time / max(calls, 1),
        ),
    )


@dataclass
class StaticSource:
    """Telemetry source returning the same rows on every call."""

    rows: Sequence[SnapshotRow] = ()
    calls: int = 0
    fetched: threading.Event = field(default_factory=threading.Event)

    def fetch_snapshot(self, target_id: int) -> List[SnapshotRow]:
        self.calls += 1
        self.fetched.set()
        return list(self.rows)


@dataclass
class FlakySource:
    """Fails the first ``failures`` calls, then behaves like ``StaticSource``."""

    rows: Sequence[SnapshotRow] = ()
    failures: int = 1
    calls: int = 0
    recovered: threading.Event = field(default_factory=threading.Event)

    def fetch_snapshot(self, target_id: int) -> List[SnapshotRow]:
        self.calls += 1
        if self.calls <= self.failures:
            raise SourceUnavailableError(f"target {target_id} unreachable")
        self.recovered.set()
        return list(self.rows)


@dataclass
class SlowSource:
    """Blocks until released, used to exercise fetch timeouts."""

    release: threading.Event = field(default_factory=threading.Event)

    def fetch_snapshot(self, target_id: int) -> List[SnapshotRow]:
        self.release.wait(5)
        return []


def insert_canonical(
    engine: Engine,
    *,
    target_id: int,
    canonical_text: str,
    canonical_fingerprint: str,
    last_seen_at: datetime,
    is_known: bool = False,
    group_id: int | None = None,
) -> int:
    """Write a canonical row directly, bypassing the upsert path."""

    stamp = to_db_timestamp(last_seen_at)
    with engine.begin() as connection:
        result = connection.execute(
            text(
                """
                INSERT INTO canonical_queries (
                    target_id, canonical_text, canonical_fingerprint, first_seen_at,
                    last_seen_at, is_known, group_id, created_at, updated_at
                ) VALUES (
                    :target_id, :canonical_text, :canonical_fingerprint, :stamp,
                    :stamp, :is_known, :group_id, :stamp, :stamp
                )
                """
            ),
            {
                "target_id": target_id,
                "canonical_text": canonical_text,
                "canonical_fingerprint": canonical_fingerprint,
                "stamp": stamp,
                "is_known": 1 if is_known else 0,
                "group_id": group_id,
            },
        )
        return int(result.lastrowid)


def insert_samples(
    engine: Engine,
    *,
    canonical_query_id: int,
    target_id: int,
    raw_texts: Iterable[tuple[str, str]],
    updated_at: datetime,
) -> None:
    """Attach samples given as ``(raw_text, raw_fingerprint)`` pairs to a canonical row."""

    stamp = to_db_timestamp(updated_at)
    with engine.begin() as connection:
        for raw_text, raw_fingerprint in raw_texts:
            connection.execute(
                text(
                    """
                    INSERT INTO query_samples (
                        canonical_query_id, target_id, raw_text, raw_fingerprint, calls,
                        total_time, collected_at, last_updated_at
                    ) VALUES (
                        :canonical_query_id, :target_id, :raw_text, :raw_fingerprint, 1,
                        1.0, :stamp, :stamp
                    )
                    """
                ),
                {
                    "canonical_query_id": canonical_query_id,
                    "target_id": target_id,
                    "raw_text": raw_text,
                    "raw_fingerprint": raw_fingerprint,
                    "stamp": stamp,
                },
            )


def counters(engine: Engine, canonical_query_id: int) -> tuple[int, int]:
    with engine.begin() as connection:
        row = connection.execute(
            text(
                "SELECT distinct_variant_count, instance_count FROM canonical_queries WHERE id = :id"
            ),
            {"id": canonical_query_id},
        ).one()
    return int(row[0]), int(row[1])
