"""Task types, scheduling bookkeeping and the task queue."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable

log = logging.getLogger(__name__)

DEFAULT_BUFFER_SIZE = 1000


class TaskType(str, Enum):
    PULL_PROJECT = "PullProject"
    PULL_PROJECTS_FROM_WILDCARD = "PullProjectsFromWildcard"
    PULL_PROJECTS_FROM_WILDCARDS = "PullProjectsFromWildcards"
    PULL_ENVIRONMENTS_FROM_PROJECT = "PullEnvironmentsFromProject"
    PULL_ENVIRONMENTS_FROM_PROJECTS = "PullEnvironmentsFromProjects"
    PULL_ENVIRONMENT_METRICS = "PullEnvironmentMetrics"
    PULL_METRICS = "PullMetrics"
    PULL_REFS_FROM_PROJECT = "PullRefsFromProject"
    PULL_REFS_FROM_PROJECTS = "PullRefsFromProjects"
    PULL_REF_METRICS = "PullRefMetrics"
    GARBAGE_COLLECT_PROJECTS = "GarbageCollectProjects"
    GARBAGE_COLLECT_ENVIRONMENTS = "GarbageCollectEnvironments"
    GARBAGE_COLLECT_REFS = "GarbageCollectRefs"
    GARBAGE_COLLECT_METRICS = "GarbageCollectMetrics"


@dataclass
class TaskSchedulingStatus:
    last: datetime | None = None
    next: datetime | None = None


@dataclass
class _Job:
    task_type: TaskType
    unique_id: str
    args: tuple


class TaskQueue:
    """Bounded queue of deduplicated tasks, run by handlers registered per task type.

    A task stays marked as queued in the store until its handler has returned.
    """

    def __init__(
        self,
        store,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
        owner: str | None = None,
        workers: int = 0,
    ) -> None:
        self.store = store
        self.buffer_size = buffer_size
        self.owner = owner or str(uuid.uuid4())
        self.scheduling_monitoring: dict[TaskType, TaskSchedulingStatus] = {}
        self._handlers: dict[TaskType, Callable[..., Any]] = {}
        self._jobs: deque[_Job] = deque()
        self._cond = threading.Condition()
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []
        for index in range(workers):
            thread = threading.Thread(
                target=self._consume, name=f"task-worker-{index}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def register(self, task_type: TaskType, handler: Callable[..., Any]) -> None:
        self._handlers[task_type] = handler

    def schedule(self, task_type: TaskType, unique_id: str, *args: Any) -> bool:
        """Queue a task unless the queue is full or it is already queued."""
        if task_type not in self._handlers:
            raise KeyError(f"no handler registered for task type {task_type.value}")
        fields = {"task_type": task_type.value, "task_unique_id": unique_id}

        if len(self) >= self.buffer_size:
            log.warning("queue buffer size exhausted, skipping scheduling of task..", extra=fields)
            return False

        try:
            queued = self.store.queue_task(task_type, unique_id, self.owner)
        except Exception:  # noqa: BLE001 - the store decides, a failure means skip
            log.warning(
                "unable to declare the queueing, skipping scheduling of task..", extra=fields
            )
            return False

        if not queued:
            log.debug("task already queued, skipping scheduling of task..", extra=fields)
            return False

        with self._cond:
            self._jobs.append(_Job(task_type, unique_id, args))
            self._cond.notify()
        return True

    def _run(self, job: _Job) -> None:
        try:
            self._handlers[job.task_type](*job.args)
        except Exception:  # noqa: BLE001 - a failing task must not stop the queue
            log.exception(
                "running task",
                extra={"task_type": job.task_type.value, "task_unique_id": job.unique_id},
            )
        finally:
            self.store.unqueue_task(job.task_type, job.unique_id)

    def run_pending(self) -> int:
        """Run queued tasks, including those they queue, until none remain."""
        count = 0
        while True:
            with self._cond:
                if not self._jobs:
                    return count
                job = self._jobs.popleft()
            self._run(job)
            count += 1

    def _consume(self) -> None:
        while True:
            with self._cond:
                while not self._jobs and not self._stopped.is_set():
                    self._cond.wait()
                if self._stopped.is_set():
                    return
                job = self._jobs.popleft()
            self._run(job)

    def schedule_with_ticker(
        self, task_type: TaskType, interval_seconds: float
    ) -> threading.Thread | None:
        """Schedule the task every interval in a background thread until stopped."""
        if interval_seconds <= 0:
            log.warning(
                "task scheduling misconfigured, currently disabled",
                extra={"task": task_type.value},
            )
            return None

        log.debug(
            "task scheduled",
            extra={"task": task_type.value, "interval_seconds": interval_seconds},
        )
        self.monitor_next(task_type, interval_seconds)

        def tick() -> None:
            while not self._stopped.wait(interval_seconds):
                self.schedule(task_type, "_")
                self.monitor_next(task_type, interval_seconds)
            log.info("scheduling of task stopped", extra={"task": task_type.value})

        thread = threading.Thread(target=tick, name=f"ticker-{task_type.value}", daemon=True)
        thread.start()
        self._threads.append(thread)
        return thread

    def _status(self, task_type: TaskType) -> TaskSchedulingStatus:
        return self.scheduling_monitoring.setdefault(task_type, TaskSchedulingStatus())

    def monitor_next(self, task_type: TaskType, interval_seconds: float) -> None:
        self._status(task_type).next = datetime.now(timezone.utc) + timedelta(
            seconds=interval_seconds
        )

    def monitor_last(self, task_type: TaskType) -> None:
        self._status(task_type).last = datetime.now(timezone.utc)

    def purge(self) -> int:
        """Drop every queued task and return how many were dropped."""
        with self._cond:
            dropped = list(self._jobs)
            self._jobs.clear()
        for job in dropped:
            self.store.unqueue_task(job.task_type, job.unique_id)
        return len(dropped)

    def stop(self) -> None:
        """Stop tickers and workers and wait for them to finish."""
        self._stopped.set()
        with self._cond:
            self._cond.notify_all()
        for thread in self._threads:
            if thread is not threading.current_thread():
                thread.join()
        self._threads.clear()

    def __len__(self) -> int:
        with self._cond:
            return len(self._jobs)