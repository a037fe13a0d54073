"""Repair and verification of duplicate canonical query rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Sequence

from sqlalchemy import bindparam, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import ConflictingCanonicalError
from app.core.logging import get_logger

from .canonicalizer import canonicalize, fingerprint
from .consistency import recompute_counters
from .database import bootstrap_database
from .models import to_db_timestamp, utcnow
from .store import upsert_canonical

logger = get_logger("query_telemetry.reconciler")


@dataclass(frozen=True)
class DuplicateGroup:
    """Canonical rows of one target that share the same canonical text.

    ``canonical_query_ids`` is ordered by the keep tie-break, so the first id
    is the row that survives a merge.
    """

    target_id: int
    canonical_text: str
    canonical_query_ids: Sequence[int]

    @property
    def keep_id(self) -> int:
        return self.canonical_query_ids[0]

    @property
    def losing_ids(self) -> Sequence[int]:
        return self.canonical_query_ids[1:]

    def to_dict(self) -> dict[str, object]:
        return {
            "target_id": self.target_id,
            "canonical_text": self.canonical_text,
            "canonical_query_ids": list(self.canonical_query_ids),
        }


@dataclass(frozen=True)
class DuplicateReport:
    target_id: int
    canonical_count: int
    sample_count: int
    duplicate_groups: List[DuplicateGroup] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.duplicate_groups

    @property
    def average_samples_per_canonical(self) -> float:
        if not self.canonical_count:
            return 0.0
        return round(self.sample_count / self.canonical_count, 2)

    def to_dict(self) -> dict[str, object]:
        return {
            "target_id": self.target_id,
            "ok": self.ok,
            "canonical_count": self.canonical_count,
            "sample_count": self.sample_count,
            "average_samples_per_canonical": self.average_samples_per_canonical,
            "duplicate_groups": [group.to_dict() for group in self.duplicate_groups],
        }


@dataclass(frozen=True)
class RecanonicalizeReport:
    target_id: int
    samples_scanned: int
    samples_moved: int
    canonicals_created: int
    merged_groups: int

    def to_dict(self) -> dict[str, int]:
        return {
            "target_id": self.target_id,
            "samples_scanned": self.samples_scanned,
            "samples_moved": self.samples_moved,
            "canonicals_created": self.canonicals_created,
            "merged_groups": self.merged_groups,
        }


_GROUP_MEMBERS_SQL = text(
    """
    SELECT cq.id
    FROM canonical_queries cq
    LEFT JOIN query_samples qs ON qs.canonical_query_id = cq.id
    WHERE cq.target_id = :target_id AND cq.canonical_text = :canonical_text
    GROUP BY cq.id, cq.last_seen_at
    ORDER BY cq.last_seen_at DESC, COUNT(qs.id) DESC, cq.id ASC
    """
)


def _group_members(connection: Connection, target_id: int, canonical_text: str) -> List[int]:
    rows = connection.execute(
        _GROUP_MEMBERS_SQL, {"target_id": target_id, "canonical_text": canonical_text}
    )
    return [int(row[0]) for row in rows]


def _find_groups(connection: Connection, target_id: int) -> List[DuplicateGroup]:
    texts = connection.execute(
        text(
            """
            SELECT canonical_text
            FROM canonical_queries
            WHERE target_id = :target_id
            GROUP BY canonical_text
            HAVING COUNT(*) > 1
            ORDER BY COUNT(*) DESC, canonical_text
            """
        ),
        {"target_id": target_id},
    ).scalars().all()
    return [
        DuplicateGroup(
            target_id=target_id,
            canonical_text=str(canonical_text),
            canonical_query_ids=tuple(_group_members(connection, target_id, canonical_text)),
        )
        for canonical_text in texts
    ]


def find_duplicate_groups(target_id: int) -> List[DuplicateGroup]:
    """Return every set of canonical rows of ``target_id`` sharing one canonical text."""

    engine = bootstrap_database()
    with engine.connect() as connection:
        return _find_groups(connection, target_id)


_REPOINT_SAMPLES_SQL = text(
    """
    UPDATE query_samples
    SET canonical_query_id = :keep_id
    WHERE canonical_query_id IN :losing_ids
    """
).bindparams(bindparam("losing_ids", expanding=True))

# Classification set on any member survives the merge.
_ABSORB_CLASSIFICATION_SQL = text(
    """
    UPDATE canonical_queries
    SET
        is_known = (
            SELECT MAX(is_known) FROM canonical_queries
            WHERE id = :keep_id OR id IN :losing_ids
        ),
        group_id = COALESCE(
            group_id,
            (
                SELECT group_id FROM canonical_queries
                WHERE id IN :losing_ids AND group_id IS NOT NULL
                ORDER BY last_seen_at DESC, id ASC
                LIMIT 1
            )
        ),
        first_seen_at = (
            SELECT MIN(first_seen_at) FROM canonical_queries
            WHERE id = :keep_id OR id IN :losing_ids
        )
    WHERE id = :keep_id
    """
).bindparams(bindparam("losing_ids", expanding=True))

_DELETE_LOSERS_SQL = text("DELETE FROM canonical_queries WHERE id IN :losing_ids").bindparams(
    bindparam("losing_ids", expanding=True)
)

_REWRITE_FINGERPRINT_SQL = text(
    """
    UPDATE canonical_queries
    SET canonical_fingerprint = :canonical_fingerprint, updated_at = :now
    WHERE id = :keep_id
    """
)


def _merge_group(connection: Connection, target_id: int, canonical_text: str) -> bool:
    members = _group_members(connection, target_id, canonical_text)
    if len(members) < 2:
        return False
    keep_id, losing_ids = members[0], members[1:]
    params = {"keep_id": keep_id, "losing_ids": losing_ids}

    connection.execute(_REPOINT_SAMPLES_SQL, params)
    connection.execute(_ABSORB_CLASSIFICATION_SQL, params)
    connection.execute(_DELETE_LOSERS_SQL, params)
    connection.execute(
        _REWRITE_FINGERPRINT_SQL,
        {
            "keep_id": keep_id,
            "canonical_fingerprint": fingerprint(canonical_text),
            "now": to_db_timestamp(utcnow()),
        },
    )
    recompute_counters(connection, (keep_id,))
    logger.info(
        "duplicate_group_merged",
        target_id=target_id,
        canonical_query_id=keep_id,
        merged_ids=losing_ids,
    )
    return True


def reconcile_duplicates(target_id: int) -> int:
    """Merge duplicate canonical rows of ``target_id`` and return the number of merged groups.

    Each group is merged in its own transaction: samples move to the kept row,
    the losing rows are deleted and the kept row's fingerprint is rewritten
    from its text so later ingestions land on it. A failing group is rolled
    back, logged and skipped. Running it again finds nothing to merge.
    """

    engine = bootstrap_database()
    with engine.connect() as connection:
        groups = _find_groups(connection, target_id)

    merged = 0
    for group in groups:
        try:
            with engine.begin() as connection:
                if _merge_group(connection, target_id, group.canonical_text):
                    merged += 1
        except SQLAlchemyError as exc:
            logger.error(
                "duplicate_group_merge_failed",
                target_id=target_id,
                kind=ConflictingCanonicalError.kind,
                canonical_query_ids=list(group.canonical_query_ids),
                error=str(exc),
                exc_info=True,
            )

    logger.info("reconciliation_completed", target_id=target_id, groups=len(groups), merged=merged)
    return merged


def verify_no_duplicates(target_id: int) -> DuplicateReport:
    """Summarize the canonical store of ``target_id`` and list any duplicate groups."""

    engine = bootstrap_database()
    with engine.connect() as connection:
        counts = connection.execute(
            text(
                """
                SELECT
                    (SELECT COUNT(*) FROM canonical_queries WHERE target_id = :target_id) AS canonical_count,
                    (SELECT COUNT(*) FROM query_samples WHERE target_id = :target_id) AS sample_count
                """
            ),
            {"target_id": target_id},
        ).mappings().one()
        groups = _find_groups(connection, target_id)

    report = DuplicateReport(
        target_id=target_id,
        canonical_count=int(counts["canonical_count"]),
        sample_count=int(counts["sample_count"]),
        duplicate_groups=groups,
    )
    if not report.ok:
        logger.warning(
            "duplicate_canonicals_detected",
            target_id=target_id,
            kind=ConflictingCanonicalError.kind,
            groups=len(groups),
        )
    return report


def recanonicalize(target_id: int) -> RecanonicalizeReport:
    """Re-derive the canonical form of every stored sample with the current rules.

    Samples whose shape changed move to the matching canonical row, which is
    created when missing. Counters of every touched row are recomputed and
    duplicate rows are merged afterwards.
    """

    engine = bootstrap_database()
    now = to_db_timestamp(utcnow())
    moved = created = 0
    with engine.begin() as connection:
        rows = connection.execute(
            text(
                """
                SELECT qs.id, qs.raw_text, qs.canonical_query_id, cq.canonical_fingerprint
                FROM query_samples qs
                JOIN canonical_queries cq ON cq.id = qs.canonical_query_id
                WHERE qs.target_id = :target_id
                ORDER BY qs.id
                """
            ),
            {"target_id": target_id},
        ).mappings().all()

        touched: set[int] = set()
        for row in rows:
            form = canonicalize(row["raw_text"])
            if form.fingerprint == row["canonical_fingerprint"]:
                continue
            canonical_query_id, is_new = upsert_canonical(
                connection, target_id, form.text, form.fingerprint, now
            )
            if canonical_query_id == int(row["canonical_query_id"]):
                continue
            connection.execute(
                text("UPDATE query_samples SET canonical_query_id = :canonical_query_id WHERE id = :sample_id"),
                {"canonical_query_id": canonical_query_id, "sample_id": row["id"]},
            )
            touched.update((canonical_query_id, int(row["canonical_query_id"])))
            moved += 1
            created += int(is_new)
        recompute_counters(connection, touched)

    merged = reconcile_duplicates(target_id)
    report = RecanonicalizeReport(
        target_id=target_id,
        samples_scanned=len(rows),
        samples_moved=moved,
        canonicals_created=created,
        merged_groups=merged,
    )
    logger.info("recanonicalization_completed", **report.to_dict())
    return report


__all__ = [
    "DuplicateGroup",
    "DuplicateReport",
    "RecanonicalizeReport",
    "find_duplicate_groups",
    "reconcile_duplicates",
    "recanonicalize",
    "verify_no_duplicates",
]
