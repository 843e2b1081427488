# ci_pipelines_exporter

Building blocks for turning GitLab CI activity into labelled metric values.
The package reads projects, branches, tags, environments and pipeline jobs
through the GitLab REST API, keeps projects, refs, environments and metrics in
an in-memory store, runs de-duplicated tasks from a queue, and reacts to GitLab
webhook payloads.

## Modules

| Module | What it holds |
| --- | --- |
| `ci_pipelines_exporter.version` | `GitLabVersion`: `parse()` normalises a version string with a leading `v`; `pipeline_jobs_keyset_pagination_supported()` is true from GitLab 15.9 on |
| `ci_pipelines_exporter.models` | Dataclasses `Project`, `Ref`, `Pipeline`, `Job`, `Environment`, `Deployment`, `TestReport`, `TestSuite`, `TestCase`, the `RefKind` enum, pull settings (`ProjectPull`, `RefsPull`, `RefPull`, `EnvironmentsPull`, `PipelinePull`, ...), `Wildcard`, `Config`; helpers `parse_timestamp`, `ref_regexp`, `merge_request_iid_from_ref` |
| `ci_pipelines_exporter.client` | `BaseClient` (rate-limited `request()` returning a `Page` with pagination headers, `readiness_check()`, `version()`/`update_version()`), `ClientConfig`, `GitLabError`, `new_http_session()` |
| `ci_pipelines_exporter.repositories` | `RepositoriesAPI.get_commit_count_between_refs()` |
| `ci_pipelines_exporter.branches` | `BranchesAPI.get_project_branches()`, `get_branch_latest_commit()` |
| `ci_pipelines_exporter.tags` | `TagsAPI.get_project_tags()`, `get_project_most_recent_tag_commit()` |
| `ci_pipelines_exporter.environments` | `EnvironmentsAPI.get_project_environments()`, `get_environment()` (with its latest deployment) |
| `ci_pipelines_exporter.projects` | `ProjectsAPI.get_project()`, `list_projects()` for a user, group or global wildcard |
| `ci_pipelines_exporter.jobs` | `JobsAPI`: jobs and bridges of a pipeline, jobs of downstream pipelines, and refresh of a ref's most recent jobs (keyset or page pagination depending on the server version) |
| `ci_pipelines_exporter.store` | `MemoryStore`, `Metric`, `MetricKind`, and `store_get_metric`/`store_set_metric`/`store_del_metric`, which log store failures instead of raising |
| `ci_pipelines_exporter.tasks` | `TaskQueue` with handlers per `TaskType`, a buffer limit, de-duplication through the store, optional worker threads and interval tickers |
| `ci_pipelines_exporter.refmetrics` | `RefMetricsPuller` and `emit_status_metric()`: records a ref's latest pipeline (run count, coverage, id, status, durations, timestamp) and its test report, suites and cases |
| `ci_pipelines_exporter.webhooks` | `WebhookProcessor` for pipeline, job, push, tag, merge-request and deployment payloads, plus the matching helpers `is_ref_matching_project_pull_refs`, `is_env_matching_project_pull_environments`, `is_ref_matching_wildcard`, `is_env_matching_wildcard` |

Each API class derives from `BaseClient` and is built the same way:

```python
from ci_pipelines_exporter.models import Project
from ci_pipelines_exporter.tags import TagsAPI

tags = TagsAPI("https://gitlab.example.com", token="token")
refs = tags.get_project_tags(Project("group/app"))
```

`BaseClient.from_config(ClientConfig(...))` builds one from a configuration
object instead.

## Examples

```python
from ci_pipelines_exporter.version import GitLabVersion

assert GitLabVersion.parse("15.10.2").pipeline_jobs_keyset_pagination_supported()
assert not GitLabVersion.parse("").pipeline_jobs_keyset_pagination_supported()
```

```python
from ci_pipelines_exporter.store import MemoryStore, Metric, MetricKind

store = MemoryStore()
metric = Metric(MetricKind.COVERAGE, {"project": "group/app", "ref": "main"}, 30.2)
store.set_metric(metric)
assert store.metrics()[metric.key()].value == 30.2
```

## Errors

Failed requests and non-2xx answers raise `GitLabError`, which carries the HTTP
`status_code` when there is one. An invalid regular expression in the pull
settings raises `ValueError` before any request is made.

## What the package does not do

- There is no single client that combines every API class, and no class that
  lists pipelines or fetches a pipeline, its variables or its test report.
  `RefMetricsPuller` and `WebhookProcessor` take any object offering the
  methods they call (`get_project_pipelines`, `get_ref_pipeline`,
  `get_ref_pipeline_variables`, `get_ref_pipeline_test_report`, `get_project`).
- There is no discovery of refs from projects or of projects from wildcards
  beyond `ProjectsAPI.list_projects()`, and no controller wiring the client,
  store and queue together.
- There is no command, no HTTP server, no metrics endpoint and no webhook
  listener: webhook payloads are passed in as dictionaries.
- Storage is in memory only; nothing is persisted or shared between processes.

## Running the tests

Install the `test` extra (pytest and responses) and run `pytest`.