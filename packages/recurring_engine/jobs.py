"""In-process bookkeeping of scheduler job runs.

A job is started, then completed or failed. Finished runs move into a bounded
history (newest first) that feeds :meth:`JobTracker.stats`.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import deque
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from .logging_setup import get_logger

logger = get_logger("recurring_engine.jobs")

DEFAULT_HISTORY_SIZE = 100


class JobStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class JobExecution:
    id: str
    job_name: str
    started_at: datetime
    status: JobStatus = JobStatus.RUNNING
    finished_at: datetime | None = None
    duration_ms: float | None = None
    result: Any = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class JobStats:
    total: int
    succeeded: int
    failed: int
    average_duration_ms: float
    last: JobExecution | None


class JobTracker:
    def __init__(
        self,
        *,
        history_size: int = DEFAULT_HISTORY_SIZE,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._lock = threading.Lock()
        self._running: dict[str, tuple[JobExecution, float]] = {}
        self._history: deque[JobExecution] = deque(maxlen=history_size)
        self._clock = clock

    def start(self, job_name: str) -> str:
        job_id = f"{job_name}_{uuid.uuid4().hex[:12]}"
        execution = JobExecution(id=job_id, job_name=job_name, started_at=self._clock())
        with self._lock:
            self._running[job_id] = (execution, time.monotonic())
        logger.info("Job started: %s (%s)", job_name, job_id)
        return job_id

    def _finish(self, job_id: str, **changes: Any) -> JobExecution | None:
        with self._lock:
            entry = self._running.pop(job_id, None)
            if entry is None:
                return None
            execution, t0 = entry
            finished = replace(
                execution,
                finished_at=self._clock(),
                duration_ms=(time.monotonic() - t0) * 1000.0,
                **changes,
            )
            self._history.appendleft(finished)
            return finished

    def complete(self, job_id: str, result: Any = None) -> JobExecution | None:
        finished = self._finish(job_id, status=JobStatus.COMPLETED, result=result)
        if finished is None:
            logger.warning("Attempted to complete unknown job: %s", job_id)
            return None
        logger.info(
            "Job completed: %s in %.1fms", finished.job_name, finished.duration_ms or 0.0
        )
        return finished

    def fail(self, job_id: str, error: BaseException | str) -> JobExecution | None:
        message = str(error) if isinstance(error, BaseException) else error
        finished = self._finish(job_id, status=JobStatus.FAILED, error=message)
        if finished is None:
            logger.warning("Attempted to fail unknown job: %s", job_id)
            return None
        logger.error("Job failed: %s (%s)", finished.job_name, message)
        return finished

    @contextmanager
    def track(self, job_name: str) -> Iterator[str]:
        """Record a run around a block; exceptions mark it failed and propagate."""

        job_id = self.start(job_name)
        try:
            yield job_id
        except Exception as exc:
            self.fail(job_id, exc)
            raise
        # Blocks that finish without calling complete() still close the run.
        with self._lock:
            still_running = job_id in self._running
        if still_running:
            self.complete(job_id)

    def running(self) -> list[JobExecution]:
        with self._lock:
            return [execution for execution, _ in self._running.values()]

    def history(self, job_name: str | None = None, limit: int = 10) -> list[JobExecution]:
        with self._lock:
            items = list(self._history)
        if job_name is not None:
            items = [e for e in items if e.job_name == job_name]
        return items[:limit]

    def stats(self, job_name: str | None = None) -> JobStats:
        with self._lock:
            items = list(self._history)
        if job_name is not None:
            items = [e for e in items if e.job_name == job_name]
        durations = [e.duration_ms for e in items if e.duration_ms is not None]
        return JobStats(
            total=len(items),
            succeeded=sum(1 for e in items if e.status is JobStatus.COMPLETED),
            failed=sum(1 for e in items if e.status is JobStatus.FAILED),
            average_duration_ms=sum(durations) / len(durations) if durations else 0.0,
            last=items[0] if items else None,
        )


__all__ = ["JobExecution", "JobStats", "JobStatus", "JobTracker"]
