"""Pydantic schemas exposed by the query telemetry control surface."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class HealthStatus(BaseModel):
    status: str = Field(default="ok")
    timestamp: datetime = Field(default_factory=lambda: datetime.now().astimezone())
    version: str = Field(default="0.1.0")


class MonitoringStartRequest(BaseModel):
    """Payload for starting the polling loop of a target."""

    interval_seconds: Optional[int] = Field(
        default=None, ge=1, description="Seconds between collection cycles"
    )
    scheduled_end_time: Optional[datetime] = Field(
        default=None, description="Moment after which the session completes on its own"
    )


class MonitoringSession(BaseModel):
    id: int
    target_id: int
    interval_seconds: int
    scheduled_end_time: Optional[datetime] = None
    status: str
    started_at: datetime
    stopped_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None


class MonitoringSessionResponse(BaseModel):
    session: MonitoringSession


class MonitoringSessionsResponse(BaseModel):
    sessions: List[MonitoringSession]


class CycleReportResponse(BaseModel):
    target_id: int
    session_id: Optional[int] = None
    processed: int
    new_canonicals: int
    new_samples: int
    failed: int


class QueryStats(BaseModel):
    sample_count: int
    total_calls: int
    total_time: float
    min_time: Optional[float] = None
    max_time: Optional[float] = None
    avg_time: Optional[float] = None
    first_collected_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None


class CanonicalQuery(BaseModel):
    """Query shape with its classification and derived counters."""

    id: int
    target_id: int
    canonical_text: str
    canonical_fingerprint: str
    first_seen_at: datetime
    last_seen_at: datetime
    is_known: bool
    group_id: Optional[int] = None
    distinct_variant_count: int
    instance_count: int
    updated_at: datetime
    stats: Optional[QueryStats] = None


class CanonicalQueriesResponse(BaseModel):
    queries: List[CanonicalQuery]


class CanonicalQueryResponse(BaseModel):
    query: CanonicalQuery


class QuerySample(BaseModel):
    id: int
    canonical_query_id: int
    target_id: int
    raw_text: str
    raw_fingerprint: str
    calls: int
    total_time: float
    min_time: Optional[float] = None
    max_time: Optional[float] = None
    mean_time: Optional[float] = None
    collected_at: datetime
    last_updated_at: datetime


class QuerySamplesResponse(BaseModel):
    samples: List[QuerySample]


class ClassificationRequest(BaseModel):
    """Partial classification update; an explicit ``null`` group clears it."""

    is_known: Optional[bool] = None
    group_id: Optional[int] = None


class QueryGroupCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=2000)
    is_known: bool = False


class QueryGroup(BaseModel):
    id: int
    target_id: int
    name: str
    description: Optional[str] = None
    is_known: bool
    created_at: datetime
    updated_at: datetime


class QueryGroupResponse(BaseModel):
    group: QueryGroup


class QueryGroupsResponse(BaseModel):
    groups: List[QueryGroup]


class ReconcileResponse(BaseModel):
    target_id: int
    merged_groups: int


class PruneRequest(BaseModel):
    retention_days: Optional[float] = Field(
        default=None, ge=0, description="Samples older than this many days are deleted"
    )


class PruneResponse(BaseModel):
    target_id: int
    deleted: int


__all__ = [
    "CanonicalQueriesResponse",
    "CanonicalQuery",
    "CanonicalQueryResponse",
    "ClassificationRequest",
    "CycleReportResponse",
    "HealthStatus",
    "MonitoringSession",
    "MonitoringSessionResponse",
    "MonitoringSessionsResponse",
    "MonitoringStartRequest",
    "PruneRequest",
    "PruneResponse",
    "QueryGroup",
    "QueryGroupCreateRequest",
    "QueryGroupResponse",
    "QueryGroupsResponse",
    "QuerySample",
    "QuerySamplesResponse",
    "QueryStats",
    "ReconcileResponse",
]
