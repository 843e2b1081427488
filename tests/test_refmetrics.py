from types import SimpleNamespace

import pytest

from ci_pipelines_exporter.client import GitLabError
from ci_pipelines_exporter.models import Pipeline, Project, Ref, RefKind, TestReport
from ci_pipelines_exporter.refmetrics import STATUSES, RefMetricsPuller, emit_status_metric
from ci_pipelines_exporter.store import MemoryStore, Metric, MetricKind

RUNNING_PIPELINE = {
    "id": 1,
    "created_at": "2016-08-11T11:27:00.085Z",
    "started_at": "2016-08-11T11:28:00.085Z",
    "duration": 300,
    "queued_duration": 60,
    "status": "running",
    "coverage": "30.2",
    "source": "schedule",
}

TEST_REPORT = {
    "total_time": 5,
    "total_count": 1,
    "success_count": 1,
    "failed_count": 0,
    "skipped_count": 0,
    "error_count": 0,
    "test_suites": [
        {
            "name": "Secure",
            "total_time": 5,
            "total_count": 1,
            "success_count": 1,
            "failed_count": 0,
            "skipped_count": 0,
            "error_count": 0,
            "test_cases": [
                {
                    "status": "success",
                    "name": "Security Reports can create an auto-remediation MR",
                    "classname": "vulnerability_management_spec",
                    "execution_time": 5,
                    "system_output": None,
                    "stack_trace": None,
                }
            ],
        }
    ],
}


class FakeGitLab:
    def __init__(self, pipeline, variables=(("foo", "bar"),), test_report=None, error=None):
        self.pipeline = dict(pipeline)
        self.variables = variables
        self.test_report = test_report or {}
        self.error = error
        self.requested_refs = []

    def get_project_pipelines(self, project_name, ref=None, scope=None, page=1, per_page=100,
                              order_by=None, updated_after=None):
        if self.error is not None:
            raise self.error
        self.requested_refs.append(ref)
        return SimpleNamespace(items=[{"id": self.pipeline["id"]}])

    def get_ref_pipeline(self, ref, pipeline_id):
        return Pipeline.from_api(self.pipeline)

    def get_ref_pipeline_variables(self, ref):
        return ",".join(f"{k}:{v}" for k, v in self.variables)

    def get_ref_pipeline_test_report(self, ref):
        return TestReport.from_api(self.test_report)


def _project(variables=True, reports=True):
    p = Project("foo")
    p.pull.pipeline.variables.enabled = variables
    p.pull.pipeline.test_reports.enabled = reports
    p.pull.pipeline.test_reports.test_cases = reports
    return p


def _labels():
    return {
        "kind": RefKind.BRANCH.value,
        "project": "foo",
        "ref": "bar",
        "topics": "",
        "variables": "foo:bar",
        "source": "schedule",
    }


def test_pull_ref_metrics_succeed():
    store = MemoryStore()
    gitlab = FakeGitLab(RUNNING_PIPELINE, test_report=TEST_REPORT)
    RefMetricsPuller(gitlab, store).pull_ref_metrics(Ref(_project(), RefKind.BRANCH, "bar"))

    assert gitlab.requested_refs == ["bar"]
    metrics = store.metrics()
    labels = _labels()

    for kind, value in (
        (MetricKind.RUN_COUNT, 0),
        (MetricKind.COVERAGE, 30.2),
        (MetricKind.ID, 1),
        (MetricKind.QUEUED_DURATION_SECONDS, 60),
    ):
        expected = Metric(kind, dict(labels), value)
        assert metrics[expected.key()] == expected

    status = Metric(MetricKind.STATUS, {**labels, "status": "running"}, 1)
    assert metrics[status.key()] == status
    # The pipeline is still running: no test report is fetched.
    assert not any(m.kind is MetricKind.TEST_REPORT_TOTAL_COUNT for m in metrics.values())


def test_pull_ref_test_report_metrics():
    store = MemoryStore()
    pipeline = {**RUNNING_PIPELINE, "status": "success"}
    gitlab = FakeGitLab(pipeline, test_report=TEST_REPORT)
    RefMetricsPuller(gitlab, store).pull_ref_metrics(Ref(_project(), RefKind.BRANCH, "bar"))

    metrics = store.metrics()
    labels = _labels()
    for kind, value in (
        (MetricKind.TEST_REPORT_TOTAL_TIME, 5),
        (MetricKind.TEST_REPORT_TOTAL_COUNT, 1),
        (MetricKind.TEST_REPORT_SUCCESS_COUNT, 1),
        (MetricKind.TEST_REPORT_FAILED_COUNT, 0),
        (MetricKind.TEST_REPORT_SKIPPED_COUNT, 0),
        (MetricKind.TEST_REPORT_ERROR_COUNT, 0),
    ):
        expected = Metric(kind, dict(labels), value)
        assert metrics[expected.key()] == expected

    labels["test_suite_name"] = "Secure"
    for kind, value in (
        (MetricKind.TEST_SUITE_TOTAL_TIME, 5),
        (MetricKind.TEST_SUITE_TOTAL_COUNT, 1),
        (MetricKind.TEST_SUITE_SUCCESS_COUNT, 1),
        (MetricKind.TEST_SUITE_FAILED_COUNT, 0),
        (MetricKind.TEST_SUITE_SKIPPED_COUNT, 0),
        (MetricKind.TEST_SUITE_ERROR_COUNT, 0),
    ):
        expected = Metric(kind, dict(labels), value)
        assert metrics[expected.key()] == expected

    labels["test_case_name"] = "Security Reports can create an auto-remediation MR"
    labels["test_case_classname"] = "vulnerability_management_spec"
    execution = Metric(MetricKind.TEST_CASE_EXECUTION_TIME, dict(labels), 5)
    assert metrics[execution.key()] == execution

    labels["status"] = "success"
    case_status = Metric(MetricKind.TEST_CASE_STATUS, dict(labels), 1)
    assert metrics[case_status.key()] == case_status


def test_pull_ref_metrics_merge_request_pipeline():
    store = MemoryStore()
    pipeline = {
        "id": 1,
        "updated_at": "2016-08-11T11:28:34.085Z",
        "duration": 300,
        "status": "running",
        "coverage": "30.2",
        "source": "schedule",
    }
    gitlab = FakeGitLab(pipeline)
    project = _project(reports=False)
    RefMetricsPuller(gitlab, store).pull_ref_metrics(Ref(project, RefKind.MERGE_REQUEST, "1234"))
    assert gitlab.requested_refs == ["refs/merge-requests/1234/head"]
    stored = store.refs()[Ref(project, RefKind.MERGE_REQUEST, "1234").key()]
    assert stored.latest_pipeline.variables == "foo:bar"


def test_run_count_increments_on_new_pipeline():
    store = MemoryStore()
    project = _project(variables=False, reports=False)
    ref = Ref(project, RefKind.BRANCH, "bar")
    gitlab = FakeGitLab(RUNNING_PIPELINE)
    puller = RefMetricsPuller(gitlab, store)
    puller.pull_ref_metrics(ref)
    gitlab.pipeline["id"] = 2
    puller.pull_ref_metrics(ref)

    labels = {**_labels(), "variables": ""}
    run_count = Metric(MetricKind.RUN_COUNT, labels)
    store.get_metric(run_count)
    assert run_count.value == 1
    pipeline_id = Metric(MetricKind.ID, labels)
    store.get_metric(pipeline_id)
    assert pipeline_id.value == 2


def test_unchanged_pipeline_refreshes_most_recent_jobs():
    store = MemoryStore()
    ref = Ref(_project(variables=False, reports=False), RefKind.BRANCH, "bar")
    refreshed = []
    puller = RefMetricsPuller(
        FakeGitLab(RUNNING_PIPELINE), store, pull_most_recent_jobs=refreshed.append
    )
    puller.pull_ref_metrics(ref)
    assert refreshed == []
    puller.pull_ref_metrics(ref)
    assert [r.latest_pipeline.id for r in refreshed] == [1]


def test_pipeline_jobs_hook_called_when_jobs_enabled():
    store = MemoryStore()
    project = _project(variables=False, reports=False)
    project.pull.pipeline.jobs.enabled = True
    seen = []
    puller = RefMetricsPuller(FakeGitLab(RUNNING_PIPELINE), store, pull_pipeline_jobs=seen.append)
    puller.pull_ref_metrics(Ref(project, RefKind.BRANCH, "bar"))
    assert [r.name for r in seen] == ["bar"]


def test_pull_ref_metrics_wraps_listing_error():
    store = MemoryStore()
    gitlab = FakeGitLab(RUNNING_PIPELINE, error=GitLabError("boom"))
    with pytest.raises(GitLabError, match="error fetching project pipelines for foo"):
        RefMetricsPuller(gitlab, store).pull_ref_metrics(Ref(_project(), RefKind.BRANCH, "bar"))
    assert store.metrics() == {}


def test_emit_status_metric_sparse_and_dense():
    store = MemoryStore()
    labels = {"project": "foo"}
    emit_status_metric(store, MetricKind.STATUS, labels, STATUSES, "failed", False)
    metrics = store.metrics().values()
    assert len(metrics) == len(STATUSES)
    assert {m.labels["status"] for m in metrics if m.value == 1} == {"failed"}

    emit_status_metric(store, MetricKind.STATUS, labels, STATUSES, "success", True)
    remaining = list(store.metrics().values())
    assert [(m.labels["status"], m.value) for m in remaining] == [("success", 1)]