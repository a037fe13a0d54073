"""Keep the derived counters of canonical queries equal to their live sample set."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import text
from sqlalchemy.engine import Connection

from app.core.logging import get_logger

from .database import bootstrap_database

logger = get_logger("query_telemetry.consistency")

_RECOMPUTE_SQL = text(
    """
    UPDATE canonical_queries
    SET
        distinct_variant_count = (
            SELECT COUNT(DISTINCT raw_fingerprint)
            FROM query_samples
            WHERE canonical_query_id = :canonical_query_id
        ),
        instance_count = (
            SELECT COUNT(*)
            FROM query_samples
            WHERE canonical_query_id = :canonical_query_id
        )
    WHERE id = :canonical_query_id
    """
)


@dataclass(frozen=True)
class CounterDrift:
    """A canonical query whose stored counters disagreed with its samples."""

    canonical_query_id: int
    stored_distinct: int
    stored_instances: int
    live_distinct: int
    live_instances: int

    def to_dict(self) -> dict[str, int]:
        return {
            "canonical_query_id": self.canonical_query_id,
            "stored_distinct": self.stored_distinct,
            "stored_instances": self.stored_instances,
            "live_distinct": self.live_distinct,
            "live_instances": self.live_instances,
        }


def recompute_counters(connection: Connection, canonical_query_ids: Iterable[int]) -> None:
    """Re-aggregate counters for ``canonical_query_ids`` inside the caller's transaction.

    Counters are always rebuilt from the full child set, never adjusted by
    deltas, so a missed or repeated call cannot make them drift.
    """

    for canonical_query_id in sorted(set(canonical_query_ids)):
        connection.execute(_RECOMPUTE_SQL, {"canonical_query_id": canonical_query_id})


def recompute(canonical_query_id: int) -> None:
    """Recalculate and persist the counters of a single canonical query."""

    engine = bootstrap_database()
    with engine.begin() as connection:
        recompute_counters(connection, (canonical_query_id,))


def audit_counters(target_id: int, *, repair: bool = True) -> list[CounterDrift]:
    """Report, and by default repair, canonical rows whose counters drifted."""

    engine = bootstrap_database()
    with engine.begin() as connection:
        rows = connection.execute(
            text(
                """
                SELECT
                    cq.id AS canonical_query_id,
                    cq.distinct_variant_count AS stored_distinct,
                    cq.instance_count AS stored_instances,
                    COUNT(DISTINCT qs.raw_fingerprint) AS live_distinct,
                    COUNT(qs.id) AS live_instances
                FROM canonical_queries cq
                LEFT JOIN query_samples qs ON qs.canonical_query_id = cq.id
                WHERE cq.target_id = :target_id
                GROUP BY cq.id, cq.distinct_variant_count, cq.instance_count
                HAVING cq.distinct_variant_count != COUNT(DISTINCT qs.raw_fingerprint)
                    OR cq.instance_count != COUNT(qs.id)
                ORDER BY cq.id
                """
            ),
            {"target_id": target_id},
        ).mappings()
        drifts = [CounterDrift(**{key: int(value) for key, value in row.items()}) for row in rows]

        if drifts and repair:
            recompute_counters(connection, (drift.canonical_query_id for drift in drifts))

    if drifts:
        logger.warning(
            "canonical_counters_drifted",
            target_id=target_id,
            drifted=len(drifts),
            repaired=repair,
        )
    return drifts


__all__ = ["CounterDrift", "audit_counters", "recompute", "recompute_counters"]
