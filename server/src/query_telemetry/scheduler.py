"""Registry of cancellable polling loops, one per monitored target."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional

from app.core.errors import (
    SessionStateConflictError,
    SourceUnavailableError,
    StoreWriteFailureError,
    UnknownTargetError,
)
from app.core.logging import get_logger
from app.core.request_context import bind_loop_context
from app.core.settings import get_settings

from . import sessions as session_store
from .models import MonitoringSessionRecord, SessionStatus, utcnow
from .sources import SourceRegistry, fetch_with_timeout, source_executor, source_registry
from .store import ingest_sample

logger = get_logger("query_telemetry.scheduler")


@dataclass(frozen=True)
class CycleReport:
    """Outcome of one collection cycle."""

    target_id: int
    session_id: Optional[int]
    processed: int
    new_canonicals: int
    new_samples: int
    failed: int

    def to_dict(self) -> dict[str, object]:
        return {
            "target_id": self.target_id,
            "session_id": self.session_id,
            "processed": self.processed,
            "new_canonicals": self.new_canonicals,
            "new_samples": self.new_samples,
            "failed": self.failed,
        }


def effective_source_timeout(interval_seconds: int) -> float:
    """Bound a snapshot fetch so it always finishes before the next cycle is due."""

    return min(get_settings().source_timeout_seconds, interval_seconds * 0.9)


class _PollingLoop:
    """Daemon thread running the cycles of one monitoring session."""

    def __init__(self, scheduler: "MonitoringScheduler", session: MonitoringSessionRecord) -> None:
        self.session = session
        self._scheduler = scheduler
        self._stop_event = threading.Event()
        self._thread = threading.Thread(
            target=self._run,
            name=f"query-telemetry-target-{session.target_id}",
            daemon=True,
        )

    @property
    def target_id(self) -> int:
        return self.session.target_id

    @property
    def is_alive(self) -> bool:
        return self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        self._thread.start()

    def signal_stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float) -> bool:
        if self._thread is threading.current_thread():
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _is_due(self) -> bool:
        end = self.session.scheduled_end_time
        return end is not None and utcnow() >= end

    def _next_wait(self) -> tuple[float, bool]:
        """Seconds until the next cycle, and whether the end time comes first."""

        interval = float(self.session.interval_seconds)
        end = self.session.scheduled_end_time
        if end is None:
            return interval, False
        remaining = (end - utcnow()).total_seconds()
        if remaining <= interval:
            return max(remaining, 0.0), True
        return interval, False

    def _run(self) -> None:
        bind_loop_context(target_id=self.session.target_id, session_id=self.session.id)
        timeout = effective_source_timeout(self.session.interval_seconds)
        while not self._stop_event.is_set():
            try:
                self._scheduler._collect(
                    self.session.target_id,
                    timeout=timeout,
                    session_id=self.session.id,
                    stop_event=self._stop_event,
                )
            except SourceUnavailableError as exc:
                logger.warning("telemetry_source_unavailable", error=str(exc))
            except Exception:
                logger.exception("poll_cycle_failed")

            if self._is_due():
                self._scheduler._complete(self)
                return
            delay, reaches_end = self._next_wait()
            if self._stop_event.wait(delay):
                return
            if reaches_end:
                self._scheduler._complete(self)
                return


class MonitoringScheduler:
    """Coordinates starting and stopping the polling loop of each target."""

    def __init__(self, sources: SourceRegistry | None = None) -> None:
        self._sources = sources or source_registry
        self._loops: Dict[int, _PollingLoop] = {}
        self._executors: Dict[int, ThreadPoolExecutor] = {}
        self._lock = threading.Lock()
        self._executors_lock = threading.Lock()

    @property
    def sources(self) -> SourceRegistry:
        return self._sources

    def is_running(self, target_id: int) -> bool:
        with self._lock:
            loop = self._loops.get(target_id)
            return loop is not None and loop.is_alive

    def start(
        self,
        target_id: int,
        interval_seconds: int | None = None,
        scheduled_end_time: datetime | None = None,
    ) -> MonitoringSessionRecord:
        """Create a running session for ``target_id`` and begin polling it.

        Raises ``SessionStateConflictError`` when the target is already being
        monitored and ``UnknownTargetError`` when no telemetry source exists.
        """

        interval = interval_seconds if interval_seconds is not None else get_settings().default_interval_seconds
        if interval < 1:
            raise ValueError("interval_seconds must be at least 1")

        self._sources.get(target_id)
        with self._lock:
            existing = self._loops.get(target_id)
            if existing is not None and existing.is_alive:
                raise SessionStateConflictError(
                    f"Monitoring is already running for target {target_id}",
                    details={"target_id": target_id, "session_id": existing.session.id},
                )
            session = session_store.create_session(
                target_id,
                interval_seconds=interval,
                scheduled_end_time=scheduled_end_time,
            )
            loop = _PollingLoop(self, session)
            self._loops[target_id] = loop
            loop.start()

        logger.info(
            "monitoring_started",
            target_id=target_id,
            session_id=session.id,
            interval_seconds=interval,
            scheduled_end_time=scheduled_end_time.isoformat() if scheduled_end_time else None,
        )
        return session

    def stop(self, target_id: int) -> MonitoringSessionRecord:
        """Stop monitoring ``target_id``; stopping a finished session is a no-op.

        Waits up to the configured stop timeout for an in-flight cycle so no
        further writes happen once this returns.
        """

        with self._lock:
            loop = self._loops.pop(target_id, None)
            if loop is not None:
                loop.signal_stop()
            running = session_store.get_running_session(target_id)
            stopped = (
                session_store.finish_session(running.id, SessionStatus.STOPPED)
                if running is not None
                else None
            )

        if loop is not None and not loop.join(get_settings().stop_timeout_seconds):
            logger.warning("polling_loop_stop_timed_out", target_id=target_id, session_id=loop.session.id)

        if stopped is not None:
            logger.info("monitoring_stopped", target_id=target_id, session_id=stopped.id)
            return stopped

        latest = session_store.get_latest_session(target_id)
        if latest is None:
            raise SessionStateConflictError(
                f"Monitoring was never started for target {target_id}",
                details={"target_id": target_id},
            )
        return latest

    def list_sessions(self, target_id: int) -> List[MonitoringSessionRecord]:
        return session_store.list_sessions(target_id)

    def run_cycle(self, target_id: int) -> CycleReport:
        """Run one collection cycle synchronously, outside the polling loop."""

        running = session_store.get_running_session(target_id)
        if running is not None:
            timeout = effective_source_timeout(running.interval_seconds)
        else:
            timeout = get_settings().source_timeout_seconds
        return self._collect(
            target_id,
            timeout=timeout,
            session_id=running.id if running is not None else None,
        )

    def recover_sessions(self) -> List[MonitoringSessionRecord]:
        """Resume the loops of sessions left running by a previous process."""

        resumed: List[MonitoringSessionRecord] = []
        for session in session_store.list_running_sessions():
            end = session.scheduled_end_time
            if end is not None and utcnow() >= end:
                session_store.finish_session(session.id, SessionStatus.COMPLETED)
                logger.info("monitoring_completed", target_id=session.target_id, session_id=session.id)
                continue
            try:
                self._sources.get(session.target_id)
            except UnknownTargetError:
                session_store.finish_session(session.id, SessionStatus.STOPPED)
                logger.warning(
                    "monitoring_session_orphaned",
                    target_id=session.target_id,
                    session_id=session.id,
                )
                continue
            with self._lock:
                existing = self._loops.get(session.target_id)
                if existing is not None and existing.is_alive:
                    continue
                loop = _PollingLoop(self, session)
                self._loops[session.target_id] = loop
                loop.start()
            resumed.append(session)
            logger.info("monitoring_resumed", target_id=session.target_id, session_id=session.id)
        return resumed

    def shutdown(self) -> None:
        """Stop every loop without changing session state so they resume on restart."""

        with self._lock:
            loops = list(self._loops.values())
            self._loops.clear()
        for loop in loops:
            loop.signal_stop()
        timeout = get_settings().stop_timeout_seconds
        for loop in loops:
            loop.join(timeout)

        with self._executors_lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=False, cancel_futures=True)

    def _executor(self, target_id: int) -> ThreadPoolExecutor:
        with self._executors_lock:
            executor = self._executors.get(target_id)
            if executor is None:
                executor = source_executor(target_id)
                self._executors[target_id] = executor
            return executor

    def _complete(self, loop: _PollingLoop) -> None:
        with self._lock:
            if self._loops.get(loop.target_id) is loop:
                del self._loops[loop.target_id]
            completed = session_store.finish_session(loop.session.id, SessionStatus.COMPLETED)
        if completed is not None:
            logger.info("monitoring_completed", target_id=loop.target_id, session_id=loop.session.id)

    def _collect(
        self,
        target_id: int,
        *,
        timeout: float,
        session_id: int | None = None,
        stop_event: threading.Event | None = None,
    ) -> CycleReport:
        source = self._sources.get(target_id)
        rows = fetch_with_timeout(source, target_id, timeout, executor=self._executor(target_id))
        if stop_event is not None and stop_event.is_set():
            return CycleReport(target_id, session_id, 0, 0, 0, 0)

        new_canonicals = new_samples = failed = 0
        for row in rows:
            try:
                result = ingest_sample(target_id, row.raw_text, row.stats)
            except StoreWriteFailureError as exc:
                failed += 1
                logger.warning("sample_write_failed", target_id=target_id, error=str(exc))
                continue
            except Exception:
                failed += 1
                logger.exception("sample_ingest_failed", target_id=target_id)
                continue
            new_canonicals += int(result.is_new_canonical)
            new_samples += int(result.is_new_sample)

        if session_id is not None:
            session_store.touch_last_run(session_id)

        report = CycleReport(
            target_id=target_id,
            session_id=session_id,
            processed=len(rows) - failed,
            new_canonicals=new_canonicals,
            new_samples=new_samples,
            failed=failed,
        )
        logger.info("poll_cycle_completed", **report.to_dict())
        return report


monitoring_scheduler = MonitoringScheduler()


__all__ = [
    "CycleReport",
    "MonitoringScheduler",
    "effective_source_timeout",
    "monitoring_scheduler",
]
