"""Retention pruning of stale query samples."""

from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import StoreWriteFailureError
from app.core.logging import get_logger

from .consistency import recompute_counters
from .database import bootstrap_database
from .models import to_db_timestamp, utcnow

logger = get_logger("query_telemetry.pruner")


def prune(
    retention: timedelta,
    *,
    target_id: int | None = None,
    now: datetime | None = None,
) -> int:
    """Delete samples last updated at or before ``now - retention`` and return how many.

    Canonical queries are never removed, even when they end up without
    samples; their counters are recomputed in the same transaction.
    """

    if retention < timedelta(0):
        raise ValueError("retention must not be negative")

    cutoff = to_db_timestamp((now or utcnow()) - retention)
    scope = "last_updated_at <= :cutoff"
    params: dict[str, object] = {"cutoff": cutoff}
    if target_id is not None:
        scope += " AND target_id = :target_id"
        params["target_id"] = target_id

    engine = bootstrap_database()
    try:
        with engine.begin() as connection:
            affected = connection.execute(
                text(
                    f"""
                    DELETE FROM query_samples
                    WHERE {scope}
                    RETURNING canonical_query_id
                    """
                ),
                params,
            ).scalars().all()
            recompute_counters(connection, (int(value) for value in affected))
    except SQLAlchemyError as exc:
        raise StoreWriteFailureError(
            f"Failed to prune samples older than {cutoff}: {exc}",
            details={"cutoff": cutoff, "target_id": target_id},
        ) from exc

    deleted = len(affected)
    logger.info(
        "samples_pruned",
        target_id=target_id,
        cutoff=cutoff,
        deleted=deleted,
        canonical_queries=len(set(affected)),
    )
    return deleted


__all__ = ["prune"]
