"""Data model for projects, refs, pipelines, jobs, environments and config."""

from __future__ import annotations

import logging
import math
import re
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

log = logging.getLogger(__name__)

_MERGE_REQUEST_PATTERN = r"^((\d+)|refs/merge-requests/(\d+)/head)$"
_MERGE_REQUEST_RE = re.compile(_MERGE_REQUEST_PATTERN)
_FRACTION_RE = re.compile(r"\.(\d+)")


class RefKind(str, Enum):
    """Kind of git reference a pipeline runs on."""

    BRANCH = "branch"
    TAG = "tag"
    MERGE_REQUEST = "merge-request"


def _crc_key(text: str) -> str:
    return str(zlib.crc32(text.encode("utf-8")))


def _compile(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"error parsing regexp: {exc}: `{pattern}`") from exc


def parse_timestamp(value: str | None) -> float | None:
    """Parse an ISO 8601 timestamp into whole Unix seconds, or None if absent."""
    if not value:
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda m: "." + (m.group(1) + "000000")[:6], text, count=1)
    moment = datetime.fromisoformat(text)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return float(math.floor(moment.timestamp()))


def merge_request_iid_from_ref(ref_name: str) -> str:
    """Extract the merge-request IID from a ref name, raising ValueError if absent."""
    match = _MERGE_REQUEST_RE.match(ref_name)
    if match is not None:
        iid = match.group(2) or match.group(3)
        if iid:
            return iid
    raise ValueError(f"unable to extract the merge-request ID from the ref ({ref_name})")


@dataclass
class RefPull:
    enabled: bool = True
    regexp: str = ".*"
    exclude_deleted: bool = True
    most_recent: int = 0
    max_age_seconds: int = 0


@dataclass
class RefsPull:
    branches: RefPull = field(default_factory=lambda: RefPull(regexp=r"^(?:main|master)$"))
    tags: RefPull = field(default_factory=RefPull)
    merge_requests: RefPull = field(default_factory=lambda: RefPull(enabled=False))

    def for_kind(self, kind: RefKind) -> RefPull:
        """Return the settings for refs of the given kind."""
        if kind is RefKind.BRANCH:
            return self.branches
        if kind is RefKind.TAG:
            return self.tags
        if kind is RefKind.MERGE_REQUEST:
            return self.merge_requests
        raise ValueError(f"invalid ref kind ({kind})")


def ref_regexp(refs_pull: RefsPull, kind: RefKind) -> re.Pattern:
    """Compile the pattern a ref of the given kind must match to be exported."""
    if kind is RefKind.MERGE_REQUEST:
        return _MERGE_REQUEST_RE
    return _compile(refs_pull.for_kind(kind).regexp)


@dataclass
class EnvironmentsPull:
    enabled: bool = False
    regexp: str = ".*"
    exclude_stopped: bool = True


@dataclass
class PipelineJobsPull:
    enabled: bool = False
    from_child_pipelines: bool = True


@dataclass
class PipelineVariablesPull:
    enabled: bool = False
    regexp: str = ".*"


@dataclass
class TestReportsPull:
    __test__ = False

    enabled: bool = False
    from_child_pipelines: bool = False
    test_cases: bool = False


@dataclass
class PipelinePull:
    jobs: PipelineJobsPull = field(default_factory=PipelineJobsPull)
    variables: PipelineVariablesPull = field(default_factory=PipelineVariablesPull)
    test_reports: TestReportsPull = field(default_factory=TestReportsPull)


@dataclass
class ProjectPull:
    refs: RefsPull = field(default_factory=RefsPull)
    environments: EnvironmentsPull = field(default_factory=EnvironmentsPull)
    pipeline: PipelinePull = field(default_factory=PipelinePull)


@dataclass
class Project:
    name: str
    pull: ProjectPull = field(default_factory=ProjectPull)
    output_sparse_status_metrics: bool = True
    topics: str = ""

    def key(self) -> str:
        return _crc_key(self.name)


@dataclass
class TestCase:
    __test__ = False

    name: str = ""
    classname: str = ""
    execution_time: float = 0.0
    status: str = ""

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> TestCase:
        return cls(
            name=data.get("name") or "",
            classname=data.get("classname") or "",
            execution_time=float(data.get("execution_time") or 0),
            status=data.get("status") or "",
        )


@dataclass
class TestSuite:
    __test__ = False

    name: str = ""
    total_time: float = 0.0
    total_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    test_cases: list[TestCase] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> TestSuite:
        return cls(
            name=data.get("name") or "",
            total_time=float(data.get("total_time") or 0),
            total_count=int(data.get("total_count") or 0),
            success_count=int(data.get("success_count") or 0),
            failed_count=int(data.get("failed_count") or 0),
            skipped_count=int(data.get("skipped_count") or 0),
            error_count=int(data.get("error_count") or 0),
            test_cases=[TestCase.from_api(tc) for tc in data.get("test_cases") or []],
        )


@dataclass
class TestReport:
    __test__ = False

    total_time: float = 0.0
    total_count: int = 0
    success_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    error_count: int = 0
    test_suites: list[TestSuite] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> TestReport:
        return cls(
            total_time=float(data.get("total_time") or 0),
            total_count=int(data.get("total_count") or 0),
            success_count=int(data.get("success_count") or 0),
            failed_count=int(data.get("failed_count") or 0),
            skipped_count=int(data.get("skipped_count") or 0),
            error_count=int(data.get("error_count") or 0),
            test_suites=[TestSuite.from_api(ts) for ts in data.get("test_suites") or []],
        )


@dataclass
class Pipeline:
    id: int = 0
    coverage: float = 0.0
    timestamp: float = 0.0
    duration_seconds: float = 0.0
    queued_duration_seconds: float = 0.0
    source: str = ""
    status: str = ""
    variables: str = ""
    test_report: TestReport = field(default_factory=TestReport)

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Pipeline:
        coverage = 0.0
        raw_coverage = data.get("coverage")
        if raw_coverage not in (None, ""):
            try:
                coverage = float(raw_coverage)
            except (TypeError, ValueError):
                log.warning("could not parse pipeline coverage value %r", raw_coverage)
        return cls(
            id=int(data.get("id") or 0),
            coverage=coverage,
            timestamp=parse_timestamp(data.get("updated_at")) or 0.0,
            duration_seconds=float(data.get("duration") or 0),
            queued_duration_seconds=float(data.get("queued_duration") or 0),
            source=data.get("source") or "",
            status=data.get("status") or "",
        )


@dataclass
class Job:
    id: int = 0
    name: str = ""
    stage: str = ""
    status: str = ""
    timestamp: float = 0.0
    duration_seconds: float = 0.0
    queued_duration_seconds: float = 0.0
    pipeline_id: int = 0
    tag_list: str = ""
    artifact_size: float = 0.0
    failure_reason: str = ""
    runner_description: str = ""

    @classmethod
    def from_api(cls, data: Mapping[str, Any]) -> Job:
        artifacts = data.get("artifacts") or []
        pipeline = data.get("pipeline") or {}
        runner = data.get("runner") or {}
        return cls(
            id=int(data.get("id") or 0),
            name=data.get("name") or "",
            stage=data.get("stage") or "",
            status=data.get("status") or "",
            timestamp=parse_timestamp(data.get("created_at")) or 0.0,
            duration_seconds=float(data.get("duration") or 0),
            queued_duration_seconds=float(data.get("queued_duration") or 0),
            pipeline_id=int(pipeline.get("id") or 0),
            tag_list=",".join(data.get("tag_list") or []),
            artifact_size=float(sum(a.get("size") or 0 for a in artifacts)),
            failure_reason=data.get("failure_reason") or "",
            runner_description=runner.get("description") or "",
        )


@dataclass
class Ref:
    project: Project
    kind: RefKind
    name: str
    latest_pipeline: Pipeline = field(default_factory=Pipeline)
    latest_jobs: dict[str, Job] = field(default_factory=dict)

    def key(self) -> str:
        return _crc_key(self.kind.value + self.project.name + self.name)

    def default_labels(self) -> dict[str, str]:
        """Labels shared by every metric of this ref."""
        return {
            "kind": self.kind.value,
            "project": self.project.name,
            "ref": self.name,
            "topics": self.project.topics,
            "variables": self.latest_pipeline.variables,
            "source": self.latest_pipeline.source,
        }


@dataclass
class Deployment:
    job_id: int = 0
    ref_kind: RefKind | None = None
    ref_name: str = ""
    username: str = ""
    timestamp: float = 0.0
    duration_seconds: float = 0.0
    commit_short_id: str = ""
    status: str = ""


@dataclass
class Environment:
    project_name: str
    name: str = ""
    id: int = 0
    external_url: str = ""
    available: bool = False
    latest_deployment: Deployment = field(default_factory=Deployment)
    output_sparse_status_metrics: bool = False

    def key(self) -> str:
        return _crc_key(self.project_name + self.name)


@dataclass
class WildcardOwner:
    name: str = ""
    kind: str = ""
    include_subgroups: bool = False


@dataclass
class Wildcard:
    search: str = ""
    owner: WildcardOwner = field(default_factory=WildcardOwner)
    archived: bool = False
    pull: ProjectPull = field(default_factory=ProjectPull)
    output_sparse_status_metrics: bool = True


@dataclass
class SchedulerConfig:
    on_init: bool = True
    scheduled: bool = True
    interval_seconds: int = 0


@dataclass
class PullConfig:
    projects_from_wildcards: SchedulerConfig = field(
        default_factory=lambda: SchedulerConfig(interval_seconds=1800)
    )
    environments_from_projects: SchedulerConfig = field(
        default_factory=lambda: SchedulerConfig(interval_seconds=1800)
    )
    refs_from_projects: SchedulerConfig = field(
        default_factory=lambda: SchedulerConfig(interval_seconds=300)
    )
    metrics: SchedulerConfig = field(default_factory=lambda: SchedulerConfig(interval_seconds=30))


@dataclass
class Config:
    projects: list[Project] = field(default_factory=list)
    wildcards: list[Wildcard] = field(default_factory=list)
    pull: PullConfig = field(default_factory=PullConfig)