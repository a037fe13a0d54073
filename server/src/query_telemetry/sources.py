"""Read-only accessors for the statement statistics of monitored targets."""

from __future__ import annotations

import math
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Dict, List, Optional, Protocol, Sequence

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from app.core.errors import SourceUnavailableError
from app.core.logging import get_logger
from app.core.settings import get_settings

from .models import SnapshotRow
from .targets import TargetManifest, load_targets

logger = get_logger("query_telemetry.sources")


class TelemetrySource(Protocol):
    """Anything able to return the current statement statistics of a target."""

    def fetch_snapshot(self, target_id: int) -> Sequence[SnapshotRow]:
        ...


class PgStatStatementsSource:
    """Snapshot reader backed by PostgreSQL's ``pg_stat_statements`` view."""

    def __init__(
        self,
        dsn: str,
        *,
        limit: int = 100,
        statement_timeout: float = 10.0,
        connect_timeout: float | None = None,
        engine: Engine | None = None,
    ) -> None:
        self._dsn = dsn
        self._limit = limit
        self._statement_timeout_ms = max(1, int(statement_timeout * 1000))
        # libpq only accepts whole seconds
        self._connect_timeout = max(
            1, math.ceil(connect_timeout if connect_timeout is not None else statement_timeout)
        )
        self._engine = engine

    def _get_engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(
                self._dsn,
                pool_pre_ping=True,
                future=True,
                connect_args={"connect_timeout": self._connect_timeout},
            )
        return self._engine

    def fetch_snapshot(self, target_id: int) -> List[SnapshotRow]:
        try:
            with self._get_engine().begin() as connection:
                connection.exec_driver_sql(
                    f"SET LOCAL statement_timeout = {self._statement_timeout_ms}"
                )
                installed = connection.execute(
                    text("SELECT 1 FROM pg_extension WHERE extname = 'pg_stat_statements'")
                ).first()
                if installed is None:
                    logger.warning("pg_stat_statements_missing", target_id=target_id)
                    raise SourceUnavailableError(
                        "pg_stat_statements extension is not installed",
                        details={"target_id": target_id},
                    )
                rows = connection.execute(
                    text(
                        """
                        SELECT
                            query,
                            calls,
                            total_exec_time,
                            min_exec_time,
                            max_exec_time,
                            mean_exec_time
                        FROM pg_stat_statements
                        WHERE query NOT LIKE '%pg_stat_statements%'
                        ORDER BY total_exec_time DESC
                        LIMIT :limit
                        """
                    ),
                    {"limit": self._limit},
                ).mappings()
                return [
                    SnapshotRow.from_payload(
                        {
                            "raw_text": row["query"],
                            "calls": row["calls"],
                            "total_time": row["total_exec_time"],
                            "min_time": row["min_exec_time"],
                            "max_time": row["max_exec_time"],
                            "mean_time": row["mean_exec_time"],
                        }
                    )
                    for row in rows
                    if isinstance(row["query"], str)
                ]
        except SQLAlchemyError as exc:
            raise SourceUnavailableError(
                f"Failed to read pg_stat_statements for target {target_id}: {exc}",
                details={"target_id": target_id},
            ) from exc

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()


def source_executor(target_id: int) -> ThreadPoolExecutor:
    """Single worker that runs the snapshot fetches of one target in order."""

    return ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"telemetry-source-{target_id}")


def fetch_with_timeout(
    source: TelemetrySource,
    target_id: int,
    timeout: float,
    *,
    executor: ThreadPoolExecutor | None = None,
) -> List[SnapshotRow]:
    """Call ``source`` in a worker thread and give up after ``timeout`` seconds.

    Every failure, including the timeout, surfaces as ``SourceUnavailableError``.
    A call that times out keeps running in its worker; its result is discarded.
    With a shared single-worker ``executor`` a hung fetch delays the calls
    queued behind it instead of leaving one more thread per call.
    """

    owned = executor is None
    worker = source_executor(target_id) if executor is None else executor
    future = worker.submit(source.fetch_snapshot, target_id)
    try:
        return list(future.result(timeout=timeout))
    except FutureTimeoutError as exc:
        future.cancel()
        raise SourceUnavailableError(
            f"Telemetry source for target {target_id} timed out after {timeout:.1f}s",
            details={"target_id": target_id, "timeout_seconds": timeout},
        ) from exc
    except SourceUnavailableError:
        raise
    except Exception as exc:
        raise SourceUnavailableError(
            f"Telemetry source for target {target_id} failed: {exc}",
            details={"target_id": target_id},
        ) from exc
    finally:
        if owned:
            worker.shutdown(wait=False)


class SourceRegistry:
    """Resolves the telemetry source of a target, building database readers on demand."""

    def __init__(self, manifest: Optional[TargetManifest] = None) -> None:
        self._manifest = manifest
        self._sources: Dict[int, TelemetrySource] = {}
        self._lock = threading.Lock()

    def register(self, target_id: int, source: TelemetrySource) -> None:
        with self._lock:
            self._sources[target_id] = source

    def get(self, target_id: int) -> TelemetrySource:
        with self._lock:
            source = self._sources.get(target_id)
            if source is None:
                manifest = self._manifest or load_targets()
                target = manifest.get(target_id)
                settings = get_settings()
                source = PgStatStatementsSource(
                    target.dsn,
                    limit=settings.snapshot_limit,
                    statement_timeout=settings.source_timeout_seconds,
                )
                self._sources[target_id] = source
            return source

    def clear(self) -> None:
        with self._lock:
            for source in self._sources.values():
                dispose = getattr(source, "dispose", None)
                if callable(dispose):
                    dispose()
            self._sources.clear()


source_registry = SourceRegistry()


__all__ = [
    "PgStatStatementsSource",
    "SourceRegistry",
    "TelemetrySource",
    "fetch_with_timeout",
    "source_executor",
    "source_registry",
]
