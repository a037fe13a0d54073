"""API route declarations for the query telemetry control surface."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import NoReturn, Optional

from fastapi import APIRouter, HTTPException, Query, status

from app.core.errors import (
    ApplicationError,
    ConflictingCanonicalError,
    InvalidClassificationError,
    NotFoundError,
    SessionStateConflictError,
    SourceUnavailableError,
    StoreWriteFailureError,
    UnknownTargetError,
    ValidationError,
    error_response,
)
from app.core.settings import get_settings

from .groups import create_query_group, list_query_groups
from .models import (
    CanonicalQueryRecord,
    CanonicalQueryWithStats,
    MonitoringSessionRecord,
    QueryGroupRecord,
)
from .pruner import prune
from .reconciler import reconcile_duplicates
from .scheduler import monitoring_scheduler
from .schemas import (
    CanonicalQueriesResponse,
    CanonicalQuery,
    CanonicalQueryResponse,
    ClassificationRequest,
    CycleReportResponse,
    HealthStatus,
    MonitoringSession,
    MonitoringSessionResponse,
    MonitoringSessionsResponse,
    MonitoringStartRequest,
    PruneRequest,
    PruneResponse,
    QueryGroup,
    QueryGroupCreateRequest,
    QueryGroupResponse,
    QueryGroupsResponse,
    QuerySample,
    QuerySamplesResponse,
    QueryStats,
    ReconcileResponse,
)
from .store import (
    UNGROUPED,
    UNSET,
    CanonicalQueryNotFoundError,
    QueryFilters,
    list_canonical_queries,
    list_samples,
    set_classification,
)

router = APIRouter(prefix="/api/v1", tags=["query-telemetry"])

_STATUS_BY_ERROR: dict[type[ApplicationError], int] = {
    SourceUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
    ConflictingCanonicalError: status.HTTP_409_CONFLICT,
    StoreWriteFailureError: status.HTTP_500_INTERNAL_SERVER_ERROR,
    SessionStateConflictError: status.HTTP_409_CONFLICT,
    UnknownTargetError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    NotFoundError: status.HTTP_404_NOT_FOUND,
}


def _raise_http(error: ApplicationError, status_code: int | None = None) -> NoReturn:
    code = status_code or _STATUS_BY_ERROR.get(type(error), status.HTTP_400_BAD_REQUEST)
    raise HTTPException(status_code=code, detail=error_response(error)) from error


def _serialize_session(record: MonitoringSessionRecord) -> MonitoringSession:
    return MonitoringSession(**record.to_dict())


def _serialize_query(record: CanonicalQueryRecord) -> CanonicalQuery:
    return CanonicalQuery(**record.to_dict())


def _serialize_listing(entry: CanonicalQueryWithStats) -> CanonicalQuery:
    payload = entry.query.to_dict()
    stats = entry.stats.to_dict()
    stats.pop("canonical_query_id")
    payload["stats"] = QueryStats(**stats)
    return CanonicalQuery(**payload)


def _serialize_group(record: QueryGroupRecord) -> QueryGroup:
    return QueryGroup(**record.to_dict())


def _parse_group_filter(raw: Optional[str]) -> int | str | None:
    if raw is None or raw == "":
        return None
    if raw == UNGROUPED:
        return UNGROUPED
    try:
        return int(raw)
    except ValueError:
        _raise_http(
            ValidationError(
                f"group_id must be an integer or '{UNGROUPED}'",
                details={"group_id": raw},
            )
        )


@router.get("/healthz", response_model=HealthStatus)
def healthcheck() -> HealthStatus:
    return HealthStatus()


@router.post("/targets/{target_id}/monitoring/start", response_model=MonitoringSessionResponse)
def start_monitoring(
    target_id: int, payload: Optional[MonitoringStartRequest] = None
) -> MonitoringSessionResponse:
    """Begin the polling loop of a target."""

    request = payload or MonitoringStartRequest()
    try:
        session = monitoring_scheduler.start(
            target_id,
            interval_seconds=request.interval_seconds,
            scheduled_end_time=request.scheduled_end_time,
        )
    except ApplicationError as exc:
        _raise_http(exc)
    return MonitoringSessionResponse(session=_serialize_session(session))


@router.post("/targets/{target_id}/monitoring/stop", response_model=MonitoringSessionResponse)
def stop_monitoring(target_id: int) -> MonitoringSessionResponse:
    try:
        session = monitoring_scheduler.stop(target_id)
    except ApplicationError as exc:
        _raise_http(exc)
    return MonitoringSessionResponse(session=_serialize_session(session))


@router.post("/targets/{target_id}/monitoring/run", response_model=CycleReportResponse)
def run_monitoring_cycle(target_id: int) -> CycleReportResponse:
    """Collect one snapshot immediately."""

    try:
        report = monitoring_scheduler.run_cycle(target_id)
    except ApplicationError as exc:
        _raise_http(exc)
    return CycleReportResponse(**report.to_dict())


@router.get("/targets/{target_id}/monitoring/sessions", response_model=MonitoringSessionsResponse)
def list_monitoring_sessions(target_id: int) -> MonitoringSessionsResponse:
    sessions = monitoring_scheduler.list_sessions(target_id)
    return MonitoringSessionsResponse(sessions=[_serialize_session(item) for item in sessions])


@router.get("/targets/{target_id}/queries", response_model=CanonicalQueriesResponse)
def list_queries(
    target_id: int,
    include_known: bool = Query(True),
    known_only: bool = Query(False),
    group_id: Optional[str] = Query(None),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    search: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
) -> CanonicalQueriesResponse:
    """List the query shapes of a target, most recently seen first."""

    filters = QueryFilters(
        include_known=include_known,
        known_only=known_only,
        group_id=_parse_group_filter(group_id),
        start=start,
        end=end,
        search=search,
        limit=limit,
    )
    try:
        entries = list_canonical_queries(target_id, filters)
    except ValueError as exc:
        _raise_http(ValidationError(str(exc), details={"target_id": target_id}))
    return CanonicalQueriesResponse(queries=[_serialize_listing(entry) for entry in entries])


@router.get("/queries/{canonical_query_id}/samples", response_model=QuerySamplesResponse)
def list_query_samples(canonical_query_id: int) -> QuerySamplesResponse:
    try:
        samples = list_samples(canonical_query_id)
    except CanonicalQueryNotFoundError:
        _raise_http(
            NotFoundError(
                f"Canonical query '{canonical_query_id}' not found",
                details={"canonical_query_id": canonical_query_id},
            )
        )
    return QuerySamplesResponse(samples=[QuerySample(**sample.to_dict()) for sample in samples])


@router.patch("/queries/{canonical_query_id}", response_model=CanonicalQueryResponse)
def classify_query(canonical_query_id: int, payload: ClassificationRequest) -> CanonicalQueryResponse:
    """Mark a query shape as known and/or move it to a group."""

    provided = payload.model_fields_set
    is_known = payload.is_known if "is_known" in provided and payload.is_known is not None else UNSET
    group_id = payload.group_id if "group_id" in provided else UNSET
    try:
        record = set_classification(canonical_query_id, is_known=is_known, group_id=group_id)
    except InvalidClassificationError as exc:
        missing_query = "group_id" not in exc.details
        _raise_http(
            exc,
            status.HTTP_404_NOT_FOUND if missing_query else status.HTTP_422_UNPROCESSABLE_ENTITY,
        )
    return CanonicalQueryResponse(query=_serialize_query(record))


@router.get("/targets/{target_id}/groups", response_model=QueryGroupsResponse)
def list_groups(target_id: int) -> QueryGroupsResponse:
    return QueryGroupsResponse(groups=[_serialize_group(group) for group in list_query_groups(target_id)])


@router.post(
    "/targets/{target_id}/groups",
    response_model=QueryGroupResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_group(target_id: int, payload: QueryGroupCreateRequest) -> QueryGroupResponse:
    try:
        group = create_query_group(
            target_id,
            name=payload.name,
            description=payload.description,
            is_known=payload.is_known,
        )
    except ValueError as exc:
        _raise_http(ValidationError(str(exc), details={"target_id": target_id}))
    return QueryGroupResponse(group=_serialize_group(group))


@router.post("/targets/{target_id}/maintenance/reconcile", response_model=ReconcileResponse)
def reconcile_target(target_id: int) -> ReconcileResponse:
    return ReconcileResponse(target_id=target_id, merged_groups=reconcile_duplicates(target_id))


@router.post("/targets/{target_id}/maintenance/prune", response_model=PruneResponse)
def prune_target(target_id: int, payload: Optional[PruneRequest] = None) -> PruneResponse:
    """Delete the samples of a target that fell outside the retention horizon."""

    days = payload.retention_days if payload and payload.retention_days is not None else None
    if days is None:
        days = get_settings().retention_days
    try:
        deleted = prune(timedelta(days=days), target_id=target_id)
    except ApplicationError as exc:
        _raise_http(exc)
    return PruneResponse(target_id=target_id, deleted=deleted)


__all__ = ["router"]
