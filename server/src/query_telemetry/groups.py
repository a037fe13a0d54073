"""Persistence helpers for the query groups that canonical queries may reference."""

from __future__ import annotations

from typing import List

from sqlalchemy import text
from sqlalchemy.orm import Session

from .database import session_scope
from .models import QueryGroupRecord, to_db_timestamp, utcnow


class QueryGroupNotFoundError(KeyError):
    """Raised when a query group could not be located."""


def _fetch_one(session: Session, group_id: int) -> QueryGroupRecord:
    result = session.execute(
        text(
            """
            SELECT id, target_id, name, description, is_known, created_at, updated_at
            FROM query_groups
            WHERE id = :group_id
            """
        ),
        {"group_id": group_id},
    ).mappings().one_or_none()
    if result is None:
        raise QueryGroupNotFoundError(group_id)
    return QueryGroupRecord.from_row(result)


def list_query_groups(target_id: int) -> List[QueryGroupRecord]:
    """Return the groups defined for a target ordered by name."""

    with session_scope() as session:
        rows = session.execute(
            text(
                """
                SELECT id, target_id, name, description, is_known, created_at, updated_at
                FROM query_groups
                WHERE target_id = :target_id
                ORDER BY name, id
                """
            ),
            {"target_id": target_id},
        ).mappings()
        return [QueryGroupRecord.from_row(row) for row in rows]


def create_query_group(
    target_id: int,
    *,
    name: str,
    description: str | None = None,
    is_known: bool = False,
) -> QueryGroupRecord:
    """Persist a new query group."""

    cleaned = name.strip()
    if not cleaned:
        raise ValueError("Group name is required")

    created_at = updated_at = to_db_timestamp(utcnow())
    with session_scope() as session:
        result = session.execute(
            text(
                """
                INSERT INTO query_groups (
                    target_id, name, description, is_known, created_at, updated_at
                ) VALUES (
                    :target_id, :name, :description, :is_known, :created_at, :updated_at
                )
                """
            ),
            {
                "target_id": target_id,
                "name": cleaned,
                "description": description,
                "is_known": 1 if is_known else 0,
                "created_at": created_at,
                "updated_at": updated_at,
            },
        )
        return _fetch_one(session, int(result.lastrowid))


def get_query_group(group_id: int) -> QueryGroupRecord:
    """Return a single query group."""

    with session_scope() as session:
        return _fetch_one(session, group_id)


__all__ = [
    "QueryGroupNotFoundError",
    "create_query_group",
    "get_query_group",
    "list_query_groups",
]
