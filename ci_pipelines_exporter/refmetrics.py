"""Pulling of pipeline and test-report metrics for a ref."""

from __future__ import annotations

import copy
import logging
from typing import Callable, Iterable, Mapping

from .client import GitLabError
from .models import Ref, RefKind, TestCase, TestReport, TestSuite
from .store import Metric, MetricKind, store_del_metric, store_get_metric, store_set_metric

log = logging.getLogger(__name__)

# Statuses a pipeline, job or test case can report.
STATUSES: tuple[str, ...] = (
    "created",
    "waiting_for_resource",
    "preparing",
    "pending",
    "running",
    "success",
    "failed",
    "canceled",
    "skipped",
    "manual",
    "scheduled",
)

# Statuses after which a pipeline's test report is complete.
FINISHED_STATUSES = frozenset({"success", "failed", "skipped", "cancelled"})

RefHook = Callable[[Ref], None]


def emit_status_metric(
    store,
    kind: MetricKind,
    labels: Mapping[str, str],
    statuses: Iterable[str],
    status: str,
    sparse: bool,
) -> None:
    """Write one metric per status: 1 for the current one, 0 (or deleted if sparse) otherwise."""
    for current in statuses:
        metric = Metric(kind=kind, labels={**labels, "status": current})
        if current == status:
            metric.value = 1.0
        elif sparse:
            store_del_metric(store, metric)
            continue
        store_set_metric(store, metric)


class RefMetricsPuller:
    """Fetches the latest pipeline of refs and records its metrics in the store."""

    def __init__(
        self,
        gitlab,
        store,
        pull_pipeline_jobs: RefHook | None = None,
        pull_most_recent_jobs: RefHook | None = None,
    ) -> None:
        self.gitlab = gitlab
        self.store = store
        self.pull_pipeline_jobs = pull_pipeline_jobs
        self.pull_most_recent_jobs = pull_most_recent_jobs

    def pull_ref_metrics(self, ref: Ref) -> None:
        """Refresh the ref's latest pipeline and its metrics."""
        ref = copy.deepcopy(ref)
        # The scheduled ref may lag behind the stored state.
        self.store.get_ref(ref)

        log_fields = {
            "project-name": ref.project.name,
            "ref": ref.name,
            "ref-kind": ref.kind.value,
        }

        if ref.kind is RefKind.MERGE_REQUEST:
            ref_name = f"refs/merge-requests/{ref.name}/head"
        else:
            ref_name = ref.name

        try:
            page = self.gitlab.get_project_pipelines(
                ref.project.name, ref=ref_name, page=1, per_page=1
            )
        except GitLabError as exc:
            raise GitLabError(
                f"error fetching project pipelines for {ref.project.name}: {exc}",
                status_code=getattr(exc, "status_code", None),
            ) from exc

        pipelines = page.items or []
        if not pipelines:
            log.debug("could not find any pipeline for the ref", extra=log_fields)
            return

        pipeline = self.gitlab.get_ref_pipeline(ref, int(pipelines[0].get("id") or 0))
        pipeline_settings = ref.project.pull.pipeline

        if ref.latest_pipeline.id == 0 or pipeline != ref.latest_pipeline:
            former = ref.latest_pipeline
            ref.latest_pipeline = pipeline

            if pipeline_settings.variables.enabled:
                ref.latest_pipeline.variables = self.gitlab.get_ref_pipeline_variables(ref)

            self.store.set_ref(ref)
            labels = ref.default_labels()

            # A new series starts at 0 so that restarts do not look like runs.
            run_count = Metric(kind=MetricKind.RUN_COUNT, labels=dict(labels))
            store_get_metric(self.store, run_count)
            if former.id != 0 and former.id != ref.latest_pipeline.id:
                run_count.value += 1
            store_set_metric(self.store, run_count)

            store_set_metric(
                self.store, Metric(MetricKind.COVERAGE, dict(labels), pipeline.coverage)
            )
            store_set_metric(self.store, Metric(MetricKind.ID, dict(labels), float(pipeline.id)))
            emit_status_metric(
                self.store,
                MetricKind.STATUS,
                labels,
                STATUSES,
                pipeline.status,
                ref.project.output_sparse_status_metrics,
            )
            store_set_metric(
                self.store,
                Metric(MetricKind.DURATION_SECONDS, dict(labels), pipeline.duration_seconds),
            )
            store_set_metric(
                self.store,
                Metric(
                    MetricKind.QUEUED_DURATION_SECONDS,
                    dict(labels),
                    pipeline.queued_duration_seconds,
                ),
            )
            store_set_metric(
                self.store, Metric(MetricKind.TIMESTAMP, dict(labels), pipeline.timestamp)
            )

            if pipeline_settings.jobs.enabled and self.pull_pipeline_jobs is not None:
                self.pull_pipeline_jobs(ref)
        elif self.pull_most_recent_jobs is not None:
            self.pull_most_recent_jobs(ref)

        test_reports = pipeline_settings.test_reports
        if test_reports.enabled and ref.latest_pipeline.status in FINISHED_STATUSES:
            report = self.gitlab.get_ref_pipeline_test_report(ref)
            ref.latest_pipeline.test_report = report
            self.process_test_report_metrics(ref, report)
            for suite in report.test_suites:
                self.process_test_suite_metrics(ref, suite)
                if test_reports.test_cases:
                    for case in suite.test_cases:
                        self.process_test_case_metrics(ref, suite, case)

    def _refreshed(self, ref: Ref, fields: dict) -> Ref | None:
        ref = copy.deepcopy(ref)
        try:
            self.store.get_ref(ref)
        except Exception as exc:  # noqa: BLE001 - metrics processing is best effort
            log.error("getting ref from the store: %s", exc, extra=fields)
            return None
        return ref

    def _set_counts(self, labels: dict[str, str], kinds: Iterable, source) -> None:
        for kind, value in kinds:
            store_set_metric(self.store, Metric(kind, dict(labels), float(value)))

    def process_test_report_metrics(self, ref: Ref, report: TestReport) -> None:
        """Record the totals of a test report."""
        fields = {"project-name": ref.project.name, "ref": ref.name}
        labels = ref.default_labels()
        if self._refreshed(ref, fields) is None:
            return

        log.debug("processing test report metrics", extra=fields)
        self._set_counts(
            labels,
            (
                (MetricKind.TEST_REPORT_ERROR_COUNT, report.error_count),
                (MetricKind.TEST_REPORT_FAILED_COUNT, report.failed_count),
                (MetricKind.TEST_REPORT_SKIPPED_COUNT, report.skipped_count),
                (MetricKind.TEST_REPORT_SUCCESS_COUNT, report.success_count),
                (MetricKind.TEST_REPORT_TOTAL_COUNT, report.total_count),
                (MetricKind.TEST_REPORT_TOTAL_TIME, report.total_time),
            ),
            report,
        )

    def process_test_suite_metrics(self, ref: Ref, suite: TestSuite) -> None:
        """Record the totals of one test suite."""
        fields = {"project-name": ref.project.name, "ref": ref.name, "test-suite-name": suite.name}
        labels = {**ref.default_labels(), "test_suite_name": suite.name}
        if self._refreshed(ref, fields) is None:
            return

        log.debug("processing test suite metrics", extra=fields)
        self._set_counts(
            labels,
            (
                (MetricKind.TEST_SUITE_ERROR_COUNT, suite.error_count),
                (MetricKind.TEST_SUITE_FAILED_COUNT, suite.failed_count),
                (MetricKind.TEST_SUITE_SKIPPED_COUNT, suite.skipped_count),
                (MetricKind.TEST_SUITE_SUCCESS_COUNT, suite.success_count),
                (MetricKind.TEST_SUITE_TOTAL_COUNT, suite.total_count),
                (MetricKind.TEST_SUITE_TOTAL_TIME, suite.total_time),
            ),
            suite,
        )

    def process_test_case_metrics(self, ref: Ref, suite: TestSuite, case: TestCase) -> None:
        """Record the execution time and status of one test case."""
        fields = {
            "project-name": ref.project.name,
            "ref": ref.name,
            "test-suite-name": suite.name,
            "test-case-name": case.name,
            "test-case-status": case.status,
        }
        labels = {
            **ref.default_labels(),
            "test_suite_name": suite.name,
            "test_case_name": case.name,
            "test_case_classname": case.classname,
        }
        refreshed = self._refreshed(ref, fields)
        if refreshed is None:
            return

        log.debug("processing test case metrics", extra=fields)
        store_set_metric(
            self.store,
            Metric(MetricKind.TEST_CASE_EXECUTION_TIME, dict(labels), case.execution_time),
        )
        emit_status_metric(
            self.store,
            MetricKind.TEST_CASE_STATUS,
            labels,
            STATUSES,
            case.status,
            refreshed.project.output_sparse_status_metrics,
        )