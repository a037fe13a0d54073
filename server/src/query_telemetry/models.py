"""Record types shared by the store, scheduler and maintenance jobs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping


def utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def to_db_timestamp(value: datetime) -> str:
    """Serialize ``value`` so that lexical order matches chronological order."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: object) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _optional_float(value: object) -> float | None:
    return float(value) if value is not None else None


def _optional_int(value: object) -> int | None:
    return int(value) if value is not None else None


class SessionStatus(str, Enum):
    """Lifecycle states of a monitoring session."""

    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"


@dataclass(frozen=True)
class SampleStats:
    """Execution statistics reported by a telemetry source for one raw statement."""

    calls: int
    total_time: float
    min_time: float | None = None
    max_time: float | None = None
    mean_time: float | None = None


@dataclass(frozen=True)
class SnapshotRow:
    """One row of a telemetry snapshot: the raw statement text and its statistics."""

    raw_text: str
    stats: SampleStats

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "SnapshotRow":
        raw_text = payload.get("raw_text", payload.get("query"))
        if not isinstance(raw_text, str):
            raise ValueError("snapshot row is missing its query text")
        calls = payload.get("calls")
        total_time = payload.get("total_time")
        if calls is None or total_time is None:
            raise ValueError("snapshot row is missing calls or total_time")
        return cls(
            raw_text=raw_text,
            stats=SampleStats(
                calls=int(calls),
                total_time=float(total_time),
                min_time=_optional_float(payload.get("min_time")),
                max_time=_optional_float(payload.get("max_time")),
                mean_time=_optional_float(payload.get("mean_time")),
            ),
        )


@dataclass(frozen=True)
class IngestResult:
    """Outcome of storing one snapshot row."""

    canonical_query_id: int
    sample_id: int
    is_new_canonical: bool
    is_new_sample: bool

    def to_dict(self) -> dict[str, object]:
        return {
            "canonical_query_id": self.canonical_query_id,
            "sample_id": self.sample_id,
            "is_new_canonical": self.is_new_canonical,
            "is_new_sample": self.is_new_sample,
        }


@dataclass(frozen=True)
class CanonicalQueryRecord:
    """Canonical representation of a stored query shape."""

    id: int
    target_id: int
    canonical_text: str
    canonical_fingerprint: str
    first_seen_at: datetime
    last_seen_at: datetime
    is_known: bool
    group_id: int | None
    distinct_variant_count: int
    instance_count: int
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CanonicalQueryRecord":
        return cls(
            id=int(row["id"]),
            target_id=int(row["target_id"]),
            canonical_text=str(row["canonical_text"]),
            canonical_fingerprint=str(row["canonical_fingerprint"]),
            first_seen_at=from_db_timestamp(row["first_seen_at"]),
            last_seen_at=from_db_timestamp(row["last_seen_at"]),
            is_known=bool(row["is_known"]),
            group_id=_optional_int(row.get("group_id")),
            distinct_variant_count=int(row["distinct_variant_count"]),
            instance_count=int(row["instance_count"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "canonical_text": self.canonical_text,
            "canonical_fingerprint": self.canonical_fingerprint,
            "first_seen_at": self.first_seen_at,
            "last_seen_at": self.last_seen_at,
            "is_known": self.is_known,
            "group_id": self.group_id,
            "distinct_variant_count": self.distinct_variant_count,
            "instance_count": self.instance_count,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class QueryStatsRecord:
    """Aggregate execution statistics across every sample of a query shape."""

    canonical_query_id: int
    sample_count: int
    total_calls: int
    total_time: float
    min_time: float | None
    max_time: float | None
    avg_time: float | None
    first_collected_at: datetime | None
    last_updated_at: datetime | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QueryStatsRecord":
        return cls(
            canonical_query_id=int(row["canonical_query_id"]),
            sample_count=int(row["sample_count"]),
            total_calls=int(row["total_calls"]),
            total_time=float(row["total_time"]),
            min_time=_optional_float(row.get("min_time")),
            max_time=_optional_float(row.get("max_time")),
            avg_time=_optional_float(row.get("avg_time")),
            first_collected_at=from_db_timestamp(row.get("first_collected_at")),
            last_updated_at=from_db_timestamp(row.get("last_updated_at")),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "canonical_query_id": self.canonical_query_id,
            "sample_count": self.sample_count,
            "total_calls": self.total_calls,
            "total_time": self.total_time,
            "min_time": self.min_time,
            "max_time": self.max_time,
            "avg_time": self.avg_time,
            "first_collected_at": self.first_collected_at,
            "last_updated_at": self.last_updated_at,
        }


@dataclass(frozen=True)
class CanonicalQueryWithStats:
    """Listing entry pairing a query shape with its aggregate statistics."""

    query: CanonicalQueryRecord
    stats: QueryStatsRecord

    def to_dict(self) -> dict[str, object]:
        payload = self.query.to_dict()
        payload["stats"] = self.stats.to_dict()
        return payload


@dataclass(frozen=True)
class QuerySampleRecord:
    """One literal statement variant observed for a query shape."""

    id: int
    canonical_query_id: int
    target_id: int
    raw_text: str
    raw_fingerprint: str
    calls: int
    total_time: float
    min_time: float | None
    max_time: float | None
    mean_time: float | None
    collected_at: datetime
    last_updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QuerySampleRecord":
        return cls(
            id=int(row["id"]),
            canonical_query_id=int(row["canonical_query_id"]),
            target_id=int(row["target_id"]),
            raw_text=str(row["raw_text"]),
            raw_fingerprint=str(row["raw_fingerprint"]),
            calls=int(row["calls"]),
            total_time=float(row["total_time"]),
            min_time=_optional_float(row.get("min_time")),
            max_time=_optional_float(row.get("max_time")),
            mean_time=_optional_float(row.get("mean_time")),
            collected_at=from_db_timestamp(row["collected_at"]),
            last_updated_at=from_db_timestamp(row["last_updated_at"]),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "canonical_query_id": self.canonical_query_id,
            "target_id": self.target_id,
            "raw_text": self.raw_text,
            "raw_fingerprint": self.raw_fingerprint,
            "calls": self.calls,
            "total_time": self.total_time,
            "min_time": self.min_time,
            "max_time": self.max_time,
            "mean_time": self.mean_time,
            "collected_at": self.collected_at,
            "last_updated_at": self.last_updated_at,
        }


@dataclass(frozen=True)
class MonitoringSessionRecord:
    """Persisted scheduling state of a monitored target."""

    id: int
    target_id: int
    interval_seconds: int
    scheduled_end_time: datetime | None
    status: SessionStatus
    started_at: datetime
    stopped_at: datetime | None
    last_run_at: datetime | None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "MonitoringSessionRecord":
        return cls(
            id=int(row["id"]),
            target_id=int(row["target_id"]),
            interval_seconds=int(row["interval_seconds"]),
            scheduled_end_time=from_db_timestamp(row.get("scheduled_end_time")),
            status=SessionStatus(str(row["status"])),
            started_at=from_db_timestamp(row["started_at"]),
            stopped_at=from_db_timestamp(row.get("stopped_at")),
            last_run_at=from_db_timestamp(row.get("last_run_at")),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "interval_seconds": self.interval_seconds,
            "scheduled_end_time": self.scheduled_end_time,
            "status": self.status.value,
            "started_at": self.started_at,
            "stopped_at": self.stopped_at,
            "last_run_at": self.last_run_at,
        }


@dataclass(frozen=True)
class QueryGroupRecord:
    """Named bucket of query shapes owned by the grouping UI."""

    id: int
    target_id: int
    name: str
    description: str | None
    is_known: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "QueryGroupRecord":
        description = row.get("description")
        return cls(
            id=int(row["id"]),
            target_id=int(row["target_id"]),
            name=str(row["name"]),
            description=str(description) if description is not None else None,
            is_known=bool(row["is_known"]),
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "target_id": self.target_id,
            "name": self.name,
            "description": self.description,
            "is_known": self.is_known,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


__all__ = [
    "CanonicalQueryRecord",
    "CanonicalQueryWithStats",
    "IngestResult",
    "MonitoringSessionRecord",
    "QueryGroupRecord",
    "QuerySampleRecord",
    "QueryStatsRecord",
    "SampleStats",
    "SessionStatus",
    "SnapshotRow",
    "from_db_timestamp",
    "to_db_timestamp",
    "utcnow",
]
