"""Persistence of canonical query shapes and their per-variant samples."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from sqlalchemy import text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.errors import InvalidClassificationError, StoreWriteFailureError
from app.core.logging import get_logger

from .canonicalizer import canonicalize, fingerprint
from .consistency import recompute_counters
from .database import get_engine, session_scope
from .models import (
    CanonicalQueryRecord,
    CanonicalQueryWithStats,
    IngestResult,
    QuerySampleRecord,
    QueryStatsRecord,
    SampleStats,
    to_db_timestamp,
    utcnow,
)

logger = get_logger("query_telemetry.store")

UNGROUPED = "ungrouped"
DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000

_CANONICAL_COLUMNS = """
    id,
    target_id,
    canonical_text,
    canonical_fingerprint,
    first_seen_at,
    last_seen_at,
    is_known,
    group_id,
    distinct_variant_count,
    instance_count,
    updated_at
"""

_SAMPLE_COLUMNS = """
    id,
    canonical_query_id,
    target_id,
    raw_text,
    raw_fingerprint,
    calls,
    total_time,
    min_time,
    max_time,
    mean_time,
    collected_at,
    last_updated_at
"""


class CanonicalQueryNotFoundError(KeyError):
    """Raised when a canonical query could not be located."""


class _Unset:
    def __repr__(self) -> str:  # pragma: no cover - debugging aid
        return "UNSET"


UNSET = _Unset()


@dataclass(frozen=True)
class QueryFilters:
    """Listing filters applied to the canonical queries of one target."""

    include_known: bool = True
    known_only: bool = False
    group_id: int | Literal["ungrouped"] | None = None
    start: datetime | None = None
    end: datetime | None = None
    search: str | None = None
    limit: int = DEFAULT_LIST_LIMIT


def upsert_canonical(
    connection: Connection, target_id: int, canonical_text: str, canonical_fingerprint: str, now: str
) -> tuple[int, bool]:
    """Insert the shape if absent and return its id plus whether this call created it."""

    inserted = connection.execute(
        text(
            """
            INSERT INTO canonical_queries (
                target_id,
                canonical_text,
                canonical_fingerprint,
                first_seen_at,
                last_seen_at,
                is_known,
                created_at,
                updated_at
            ) VALUES (
                :target_id,
                :canonical_text,
                :canonical_fingerprint,
                :now,
                :now,
                0,
                :now,
                :now
            )
            ON CONFLICT (target_id, canonical_fingerprint) DO NOTHING
            """
        ),
        {
            "target_id": target_id,
            "canonical_text": canonical_text,
            "canonical_fingerprint": canonical_fingerprint,
            "now": now,
        },
    )
    is_new = (inserted.rowcount or 0) > 0
    if not is_new:
        connection.execute(
            text(
                """
                UPDATE canonical_queries
                SET last_seen_at = :now, updated_at = :now
                WHERE target_id = :target_id AND canonical_fingerprint = :canonical_fingerprint
                """
            ),
            {"target_id": target_id, "canonical_fingerprint": canonical_fingerprint, "now": now},
        )
    canonical_query_id = connection.execute(
        text(
            """
            SELECT id FROM canonical_queries
            WHERE target_id = :target_id AND canonical_fingerprint = :canonical_fingerprint
            """
        ),
        {"target_id": target_id, "canonical_fingerprint": canonical_fingerprint},
    ).scalar_one()
    return int(canonical_query_id), is_new


def _upsert_sample(
    connection: Connection,
    target_id: int,
    canonical_query_id: int,
    raw_text: str,
    stats: SampleStats,
    now: str,
) -> tuple[int, bool, int | None]:
    params = {
        "target_id": target_id,
        "canonical_query_id": canonical_query_id,
        "raw_text": raw_text,
        "raw_fingerprint": fingerprint(raw_text),
        "calls": stats.calls,
        "total_time": stats.total_time,
        "min_time": stats.min_time,
        "max_time": stats.max_time,
        "mean_time": stats.mean_time,
        "now": now,
    }
    inserted = connection.execute(
        text(
            """
            INSERT INTO query_samples (
                canonical_query_id,
                target_id,
                raw_text,
                raw_fingerprint,
                calls,
                total_time,
                min_time,
                max_time,
                mean_time,
                collected_at,
                last_updated_at
            ) VALUES (
                :canonical_query_id,
                :target_id,
                :raw_text,
                :raw_fingerprint,
                :calls,
                :total_time,
                :min_time,
                :max_time,
                :mean_time,
                :now,
                :now
            )
            ON CONFLICT (target_id, raw_fingerprint) DO NOTHING
            """
        ),
        params,
    )
    is_new = (inserted.rowcount or 0) > 0

    existing = connection.execute(
        text(
            """
            SELECT id, canonical_query_id FROM query_samples
            WHERE target_id = :target_id AND raw_fingerprint = :raw_fingerprint
            """
        ),
        params,
    ).mappings().one()
    sample_id = int(existing["id"])
    previous_canonical_id = int(existing["canonical_query_id"])

    if not is_new:
        connection.execute(
            text(
                """
                UPDATE query_samples
                SET
                    canonical_query_id = :canonical_query_id,
                    calls = :calls,
                    total_time = :total_time,
                    min_time = :min_time,
                    max_time = :max_time,
                    mean_time = :mean_time,
                    last_updated_at = :now
                WHERE id = :sample_id
                """
            ),
            {**params, "sample_id": sample_id},
        )

    moved_from = previous_canonical_id if previous_canonical_id != canonical_query_id else None
    return sample_id, is_new, moved_from


def ingest_sample(
    target_id: int,
    raw_text: str,
    stats: SampleStats,
    *,
    now: datetime | None = None,
) -> IngestResult:
    """Store one observed statement and refresh the counters of its shape.

    The canonical row is created with ``INSERT ... ON CONFLICT DO NOTHING``
    on ``(target_id, canonical_fingerprint)`` and then read back inside the
    same write transaction, so concurrent ingestions of a new shape attach
    to a single row.
    """

    timestamp = to_db_timestamp(now or utcnow())
    form = canonicalize(raw_text)
    try:
        with get_engine().begin() as connection:
            canonical_query_id, is_new_canonical = upsert_canonical(
                connection, target_id, form.text, form.fingerprint, timestamp
            )
            sample_id, is_new_sample, moved_from = _upsert_sample(
                connection, target_id, canonical_query_id, raw_text, stats, timestamp
            )
            touched = {canonical_query_id}
            if moved_from is not None:
                touched.add(moved_from)
            recompute_counters(connection, touched)
    except SQLAlchemyError as exc:
        raise StoreWriteFailureError(
            f"Failed to store sample for target {target_id}: {exc}",
            details={"target_id": target_id, "canonical_fingerprint": form.fingerprint},
        ) from exc

    if is_new_canonical:
        logger.info(
            "canonical_query_discovered",
            target_id=target_id,
            canonical_query_id=canonical_query_id,
        )
    return IngestResult(
        canonical_query_id=canonical_query_id,
        sample_id=sample_id,
        is_new_canonical=is_new_canonical,
        is_new_sample=is_new_sample,
    )


def _fetch_canonical(session: Session, canonical_query_id: int) -> CanonicalQueryRecord:
    row = session.execute(
        text(f"SELECT {_CANONICAL_COLUMNS} FROM canonical_queries WHERE id = :canonical_query_id"),
        {"canonical_query_id": canonical_query_id},
    ).mappings().one_or_none()
    if row is None:
        raise CanonicalQueryNotFoundError(canonical_query_id)
    return CanonicalQueryRecord.from_row(row)


def get_canonical_query(canonical_query_id: int) -> CanonicalQueryRecord:
    """Return a single canonical query."""

    with session_scope() as session:
        return _fetch_canonical(session, canonical_query_id)


def _prepare_filters(target_id: int, filters: QueryFilters) -> tuple[str, dict[str, object]]:
    if filters.start and filters.end and filters.start > filters.end:
        raise ValueError("start must be before end")

    params: dict[str, object] = {"target_id": target_id}
    clauses: list[str] = ["cq.target_id = :target_id"]
    if filters.known_only:
        clauses.append("cq.is_known = 1")
    elif not filters.include_known:
        clauses.append("cq.is_known = 0")
    if filters.group_id == UNGROUPED:
        clauses.append("cq.group_id IS NULL")
    elif filters.group_id is not None:
        params["group_id"] = int(filters.group_id)
        clauses.append("cq.group_id = :group_id")
    if filters.start:
        params["start"] = to_db_timestamp(filters.start)
        clauses.append("cq.last_seen_at >= :start")
    if filters.end:
        params["end"] = to_db_timestamp(filters.end)
        clauses.append("cq.last_seen_at <= :end")
    search = (filters.search or "").strip()
    if search:
        escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        params["search"] = f"%{escaped}%"
        clauses.append("cq.canonical_text LIKE :search ESCAPE '\\'")
    return " WHERE " + " AND ".join(clauses), params


def list_canonical_queries(
    target_id: int, filters: QueryFilters | None = None
) -> list[CanonicalQueryWithStats]:
    """Return the query shapes of ``target_id`` matching ``filters``, newest first."""

    resolved = filters or QueryFilters()
    where_clause, params = _prepare_filters(target_id, resolved)
    params["limit"] = max(1, min(resolved.limit, MAX_LIST_LIMIT))

    with session_scope() as session:
        rows = session.execute(
            text(
                f"""
                SELECT
                    cq.id,
                    cq.target_id,
                    cq.canonical_text,
                    cq.canonical_fingerprint,
                    cq.first_seen_at,
                    cq.last_seen_at,
                    cq.is_known,
                    cq.group_id,
                    cq.distinct_variant_count,
                    cq.instance_count,
                    cq.updated_at,
                    s.canonical_query_id,
                    s.sample_count,
                    s.total_calls,
                    s.total_time,
                    s.min_time,
                    s.max_time,
                    s.avg_time,
                    s.first_collected_at,
                    s.last_updated_at
                FROM canonical_queries cq
                JOIN aggregated_query_stats s ON s.canonical_query_id = cq.id
                {where_clause}
                ORDER BY cq.last_seen_at DESC, cq.id DESC
                LIMIT :limit
                """
            ),
            params,
        ).mappings()
        return [
            CanonicalQueryWithStats(
                query=CanonicalQueryRecord.from_row(row),
                stats=QueryStatsRecord.from_row(row),
            )
            for row in rows
        ]


def list_samples(canonical_query_id: int) -> list[QuerySampleRecord]:
    """Return the raw variants recorded for a canonical query, most recently updated first."""

    with session_scope() as session:
        _fetch_canonical(session, canonical_query_id)
        rows = session.execute(
            text(
                f"""
                SELECT {_SAMPLE_COLUMNS}
                FROM query_samples
                WHERE canonical_query_id = :canonical_query_id
                ORDER BY last_updated_at DESC, id DESC
                """
            ),
            {"canonical_query_id": canonical_query_id},
        ).mappings()
        return [QuerySampleRecord.from_row(row) for row in rows]


def get_query_stats(canonical_query_id: int) -> QueryStatsRecord:
    """Return aggregate execution statistics for a canonical query."""

    with session_scope() as session:
        row = session.execute(
            text(
                """
                SELECT
                    canonical_query_id,
                    sample_count,
                    total_calls,
                    total_time,
                    min_time,
                    max_time,
                    avg_time,
                    first_collected_at,
                    last_updated_at
                FROM aggregated_query_stats
                WHERE canonical_query_id = :canonical_query_id
                """
            ),
            {"canonical_query_id": canonical_query_id},
        ).mappings().one_or_none()
    if row is None:
        raise CanonicalQueryNotFoundError(canonical_query_id)
    return QueryStatsRecord.from_row(row)


def set_classification(
    canonical_query_id: int,
    *,
    is_known: bool | _Unset = UNSET,
    group_id: int | None | _Unset = UNSET,
) -> CanonicalQueryRecord:
    """Update the user classification of a canonical query.

    ``group_id=None`` clears the group; leaving an argument unset keeps the
    stored value.
    """

    with session_scope() as session:
        try:
            current = _fetch_canonical(session, canonical_query_id)
        except CanonicalQueryNotFoundError as exc:
            raise InvalidClassificationError(
                f"Canonical query {canonical_query_id} does not exist",
                details={"canonical_query_id": canonical_query_id},
            ) from exc

        if isinstance(group_id, int):
            group_target = session.execute(
                text("SELECT target_id FROM query_groups WHERE id = :group_id"),
                {"group_id": group_id},
            ).scalar_one_or_none()
            if group_target is None or int(group_target) != current.target_id:
                raise InvalidClassificationError(
                    f"Query group {group_id} does not exist for target {current.target_id}",
                    details={"canonical_query_id": canonical_query_id, "group_id": group_id},
                )

        assignments: list[str] = ["updated_at = :updated_at"]
        params: dict[str, object] = {
            "canonical_query_id": canonical_query_id,
            "updated_at": to_db_timestamp(utcnow()),
        }
        if not isinstance(is_known, _Unset):
            assignments.append("is_known = :is_known")
            params["is_known"] = 1 if is_known else 0
        if not isinstance(group_id, _Unset):
            assignments.append("group_id = :group_id")
            params["group_id"] = group_id

        session.execute(
            text(
                f"""
                UPDATE canonical_queries
                SET {', '.join(assignments)}
                WHERE id = :canonical_query_id
                """
            ),
            params,
        )
        return _fetch_canonical(session, canonical_query_id)


__all__ = [
    "UNGROUPED",
    "UNSET",
    "CanonicalQueryNotFoundError",
    "QueryFilters",
    "get_canonical_query",
    "get_query_stats",
    "ingest_sample",
    "list_canonical_queries",
    "list_samples",
    "set_classification",
    "upsert_canonical",
]
