"""Metrics and the in-memory store of projects, refs, environments and metrics."""

from __future__ import annotations

import copy
import json
import logging
import threading
import zlib
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from .models import Environment, Project, Ref

log = logging.getLogger(__name__)


class MetricKind(str, Enum):
    """Kind of exported metric."""

    COVERAGE = "coverage"
    DURATION_SECONDS = "duration_seconds"
    ID = "id"
    QUEUED_DURATION_SECONDS = "queued_duration_seconds"
    RUN_COUNT = "run_count"
    STATUS = "status"
    TIMESTAMP = "timestamp"
    TEST_REPORT_TOTAL_TIME = "test_report_total_time"
    TEST_REPORT_TOTAL_COUNT = "test_report_total_count"
    TEST_REPORT_SUCCESS_COUNT = "test_report_success_count"
    TEST_REPORT_FAILED_COUNT = "test_report_failed_count"
    TEST_REPORT_SKIPPED_COUNT = "test_report_skipped_count"
    TEST_REPORT_ERROR_COUNT = "test_report_error_count"
    TEST_SUITE_TOTAL_TIME = "test_suite_total_time"
    TEST_SUITE_TOTAL_COUNT = "test_suite_total_count"
    TEST_SUITE_SUCCESS_COUNT = "test_suite_success_count"
    TEST_SUITE_FAILED_COUNT = "test_suite_failed_count"
    TEST_SUITE_SKIPPED_COUNT = "test_suite_skipped_count"
    TEST_SUITE_ERROR_COUNT = "test_suite_error_count"
    TEST_CASE_EXECUTION_TIME = "test_case_execution_time"
    TEST_CASE_STATUS = "test_case_status"


@dataclass
class Metric:
    kind: MetricKind
    labels: dict[str, str] = field(default_factory=dict)
    value: float = 0.0

    def key(self) -> str:
        """Identity of the metric: its kind and its full label set."""
        text = json.dumps([self.kind.value, sorted(self.labels.items())])
        return str(zlib.crc32(text.encode("utf-8")))


def metric_log_fields(metric: Metric) -> dict[str, Any]:
    return {"metric-kind": metric.kind, "metric-labels": metric.labels}


def store_get_metric(store, metric: Metric) -> None:
    """Refresh the metric from the store, logging rather than raising on failure."""
    try:
        store.get_metric(metric)
    except Exception as exc:  # noqa: BLE001 - store failures must not stop a pull
        log.error("reading metric from the store: %s", exc, extra=metric_log_fields(metric))


def store_set_metric(store, metric: Metric) -> None:
    """Write the metric to the store, logging rather than raising on failure."""
    try:
        store.set_metric(metric)
    except Exception as exc:  # noqa: BLE001
        log.error("writing metric from the store: %s", exc, extra=metric_log_fields(metric))


def store_del_metric(store, metric: Metric) -> None:
    """Delete the metric from the store, logging rather than raising on failure."""
    try:
        store.del_metric(metric.key())
    except Exception as exc:  # noqa: BLE001
        log.error("deleting metric from the store: %s", exc, extra=metric_log_fields(metric))


def _refresh(target: Any, stored: Any | None) -> None:
    if stored is None:
        return
    for item in fields(target):
        setattr(target, item.name, copy.deepcopy(getattr(stored, item.name)))


def _task_key(task_type: Any, unique_id: str) -> str:
    return f"{getattr(task_type, 'value', task_type)}:{unique_id}"


class MemoryStore:
    """Thread-safe in-process store; values are copied in and out."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._projects: dict[str, Project] = {}
        self._refs: dict[str, Ref] = {}
        self._environments: dict[str, Environment] = {}
        self._metrics: dict[str, Metric] = {}
        self._tasks: dict[str, str] = {}

    # Projects

    def set_project(self, project: Project) -> None:
        with self._lock:
            self._projects[project.key()] = copy.deepcopy(project)

    def get_project(self, project: Project) -> None:
        """Overwrite the given project with the stored one, if any."""
        with self._lock:
            _refresh(project, self._projects.get(project.key()))

    def del_project(self, key: str) -> None:
        with self._lock:
            self._projects.pop(key, None)

    def project_exists(self, key: str) -> bool:
        with self._lock:
            return key in self._projects

    def projects(self) -> dict[str, Project]:
        with self._lock:
            return copy.deepcopy(self._projects)

    def projects_count(self) -> int:
        with self._lock:
            return len(self._projects)

    # Refs

    def set_ref(self, ref: Ref) -> None:
        with self._lock:
            self._refs[ref.key()] = copy.deepcopy(ref)

    def get_ref(self, ref: Ref) -> None:
        """Overwrite the given ref with the stored one, if any."""
        with self._lock:
            _refresh(ref, self._refs.get(ref.key()))

    def del_ref(self, key: str) -> None:
        with self._lock:
            self._refs.pop(key, None)

    def ref_exists(self, key: str) -> bool:
        with self._lock:
            return key in self._refs

    def refs(self) -> dict[str, Ref]:
        with self._lock:
            return copy.deepcopy(self._refs)

    def refs_count(self) -> int:
        with self._lock:
            return len(self._refs)

    # Environments

    def set_environment(self, environment: Environment) -> None:
        with self._lock:
            self._environments[environment.key()] = copy.deepcopy(environment)

    def get_environment(self, environment: Environment) -> None:
        """Overwrite the given environment with the stored one, if any."""
        with self._lock:
            _refresh(environment, self._environments.get(environment.key()))

    def del_environment(self, key: str) -> None:
        with self._lock:
            self._environments.pop(key, None)

    def environment_exists(self, key: str) -> bool:
        with self._lock:
            return key in self._environments

    def environments(self) -> dict[str, Environment]:
        with self._lock:
            return copy.deepcopy(self._environments)

    def environments_count(self) -> int:
        with self._lock:
            return len(self._environments)

    # Metrics

    def set_metric(self, metric: Metric) -> None:
        with self._lock:
            self._metrics[metric.key()] = copy.deepcopy(metric)

    def get_metric(self, metric: Metric) -> None:
        """Copy the stored value into the given metric, if it exists."""
        with self._lock:
            stored = self._metrics.get(metric.key())
            if stored is not None:
                metric.value = stored.value

    def del_metric(self, key: str) -> None:
        with self._lock:
            self._metrics.pop(key, None)

    def metric_exists(self, key: str) -> bool:
        with self._lock:
            return key in self._metrics

    def metrics(self) -> dict[str, Metric]:
        with self._lock:
            return copy.deepcopy(self._metrics)

    def metrics_count(self) -> int:
        with self._lock:
            return len(self._metrics)

    # Task queueing

    def queue_task(self, task_type: Any, unique_id: str, owner: str) -> bool:
        """Mark a task as queued; False if it already was."""
        key = _task_key(task_type, unique_id)
        with self._lock:
            if key in self._tasks:
                return False
            self._tasks[key] = owner
            return True

    def unqueue_task(self, task_type: Any, unique_id: str) -> None:
        with self._lock:
            self._tasks.pop(_task_key(task_type, unique_id), None)

    def current_tasks_count(self) -> int:
        with self._lock:
            return len(self._tasks)