"""Persistence helpers for monitoring sessions."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.core.errors import SessionStateConflictError

from .database import session_scope
from .models import MonitoringSessionRecord, SessionStatus, to_db_timestamp, utcnow

_SESSION_COLUMNS = """
    id,
    target_id,
    interval_seconds,
    scheduled_end_time,
    status,
    started_at,
    stopped_at,
    last_run_at
"""


def _fetch(session: Session, session_id: int) -> MonitoringSessionRecord:
    row = session.execute(
        text(f"SELECT {_SESSION_COLUMNS} FROM monitoring_sessions WHERE id = :session_id"),
        {"session_id": session_id},
    ).mappings().one()
    return MonitoringSessionRecord.from_row(row)


def create_session(
    target_id: int,
    *,
    interval_seconds: int,
    scheduled_end_time: datetime | None = None,
) -> MonitoringSessionRecord:
    """Insert a running session; the partial unique index rejects a second one."""

    now = to_db_timestamp(utcnow())
    try:
        with session_scope() as session:
            result = session.execute(
                text(
                    """
                    INSERT INTO monitoring_sessions (
                        target_id,
                        interval_seconds,
                        scheduled_end_time,
                        status,
                        started_at,
                        updated_at
                    ) VALUES (
                        :target_id,
                        :interval_seconds,
                        :scheduled_end_time,
                        :status,
                        :now,
                        :now
                    )
                    """
                ),
                {
                    "target_id": target_id,
                    "interval_seconds": interval_seconds,
                    "scheduled_end_time": (
                        to_db_timestamp(scheduled_end_time) if scheduled_end_time else None
                    ),
                    "status": SessionStatus.RUNNING.value,
                    "now": now,
                },
            )
            return _fetch(session, int(result.lastrowid))
    except IntegrityError as exc:
        raise SessionStateConflictError(
            f"Monitoring is already running for target {target_id}",
            details={"target_id": target_id},
        ) from exc


def get_running_session(target_id: int) -> Optional[MonitoringSessionRecord]:
    with session_scope() as session:
        row = session.execute(
            text(
                f"""
                SELECT {_SESSION_COLUMNS} FROM monitoring_sessions
                WHERE target_id = :target_id AND status = :status
                """
            ),
            {"target_id": target_id, "status": SessionStatus.RUNNING.value},
        ).mappings().one_or_none()
    return MonitoringSessionRecord.from_row(row) if row is not None else None


def get_latest_session(target_id: int) -> Optional[MonitoringSessionRecord]:
    with session_scope() as session:
        row = session.execute(
            text(
                f"""
                SELECT {_SESSION_COLUMNS} FROM monitoring_sessions
                WHERE target_id = :target_id
                ORDER BY started_at DESC, id DESC
                LIMIT 1
                """
            ),
            {"target_id": target_id},
        ).mappings().one_or_none()
    return MonitoringSessionRecord.from_row(row) if row is not None else None


def list_sessions(target_id: int) -> List[MonitoringSessionRecord]:
    """Return every session recorded for a target, newest first."""

    with session_scope() as session:
        rows = session.execute(
            text(
                f"""
                SELECT {_SESSION_COLUMNS} FROM monitoring_sessions
                WHERE target_id = :target_id
                ORDER BY started_at DESC, id DESC
                """
            ),
            {"target_id": target_id},
        ).mappings()
        return [MonitoringSessionRecord.from_row(row) for row in rows]


def list_running_sessions() -> List[MonitoringSessionRecord]:
    with session_scope() as session:
        rows = session.execute(
            text(
                f"""
                SELECT {_SESSION_COLUMNS} FROM monitoring_sessions
                WHERE status = :status
                ORDER BY target_id
                """
            ),
            {"status": SessionStatus.RUNNING.value},
        ).mappings()
        return [MonitoringSessionRecord.from_row(row) for row in rows]


def finish_session(session_id: int, status: SessionStatus) -> Optional[MonitoringSessionRecord]:
    """Move a running session to ``status``.

    Returns ``None`` when the session had already left the running state.
    """

    now = to_db_timestamp(utcnow())
    with session_scope() as session:
        result = session.execute(
            text(
                """
                UPDATE monitoring_sessions
                SET status = :status, stopped_at = :now, updated_at = :now
                WHERE id = :session_id AND status = :running
                """
            ),
            {
                "status": status.value,
                "now": now,
                "session_id": session_id,
                "running": SessionStatus.RUNNING.value,
            },
        )
        if not result.rowcount:
            return None
        return _fetch(session, session_id)


def touch_last_run(session_id: int, *, when: datetime | None = None) -> None:
    """Record the end of a cycle on a still-running session."""

    stamp = to_db_timestamp(when or utcnow())
    with session_scope() as session:
        session.execute(
            text(
                """
                UPDATE monitoring_sessions
                SET last_run_at = :stamp, updated_at = :stamp
                WHERE id = :session_id AND status = :running
                """
            ),
            {"stamp": stamp, "session_id": session_id, "running": SessionStatus.RUNNING.value},
        )


__all__ = [
    "create_session",
    "finish_session",
    "get_latest_session",
    "get_running_session",
    "list_running_sessions",
    "list_sessions",
    "touch_last_run",
]
