import pytest

from ci_pipelines_exporter.client import GitLabError
from ci_pipelines_exporter.models import (
    Config,
    Environment,
    Project,
    Ref,
    RefKind,
    Wildcard,
    WildcardOwner,
)
from ci_pipelines_exporter.store import MemoryStore
from ci_pipelines_exporter.tasks import TaskType
from ci_pipelines_exporter.webhooks import (
    WebhookProcessor,
    is_env_matching_project_pull_environments,
    is_env_matching_wildcard,
    is_ref_matching_project_pull_refs,
    is_ref_matching_wildcard,
)


class FakeGitLab:
    def __init__(self, project=None, error=None):
        self.project = project
        self.error = error
        self.requested = []

    def get_project(self, name):
        self.requested.append(name)
        if self.error is not None:
            raise self.error
        return self.project


def make_processor(config=None, gitlab=None, update_environment=None):
    store = MemoryStore()
    scheduled = []

    def schedule(task_type, unique_id, *args):
        scheduled.append((task_type, unique_id, args))

    processor = WebhookProcessor(
        config or Config(),
        gitlab or FakeGitLab(),
        store,
        schedule=schedule,
        update_environment=update_environment,
    )
    return processor, store, scheduled


def branch_project(name, pattern="^main$"):
    project = Project(name)
    project.pull.refs.branches.enabled = True
    project.pull.refs.branches.regexp = pattern
    return project


def test_trigger_ref_metrics_pull_existing_ref():
    processor, store, scheduled = make_processor()
    ref = Ref(project=Project("group/foo"), kind=RefKind.BRANCH, name="main")
    store.set_ref(ref)

    processor.trigger_ref_metrics_pull(ref)

    assert scheduled == [(TaskType.PULL_REF_METRICS, ref.key(), (ref,))]


def test_trigger_ref_metrics_pull_known_project_matching_ref():
    processor, store, scheduled = make_processor()
    project = branch_project("group/bar")
    store.set_project(project)
    ref = Ref(project=Project("group/bar"), kind=RefKind.BRANCH, name="main")

    processor.trigger_ref_metrics_pull(ref)

    assert store.ref_exists(ref.key())
    assert len(scheduled) == 1
    task_type, unique_id, args = scheduled[0]
    assert task_type is TaskType.PULL_REF_METRICS
    assert unique_id == ref.key()
    assert args[0].project == project


def test_trigger_ref_metrics_pull_ref_not_configured():
    processor, store, scheduled = make_processor()
    project = branch_project("group/bar")
    project.pull.refs.branches.enabled = False
    store.set_project(project)
    ref = Ref(project=Project("group/bar"), kind=RefKind.BRANCH, name="main")

    processor.trigger_ref_metrics_pull(ref)

    assert scheduled == []
    assert not store.ref_exists(ref.key())


def test_trigger_ref_metrics_pull_unknown_project_without_wildcards():
    processor, store, scheduled = make_processor()
    ref = Ref(project=Project("group/unknown"), kind=RefKind.BRANCH, name="main")

    processor.trigger_ref_metrics_pull(ref)

    assert scheduled == []
    assert store.refs_count() == 0


def test_trigger_ref_metrics_pull_matching_wildcard_schedules_project_pull():
    wildcard = Wildcard(owner=WildcardOwner(name="group", kind="group"))
    wildcard.pull.refs.branches.enabled = True
    wildcard.pull.refs.branches.regexp = "^main$"
    other = Wildcard(owner=WildcardOwner(name="elsewhere", kind="group"))
    processor, _, scheduled = make_processor(config=Config(wildcards=[wildcard, other]))
    ref = Ref(project=Project("group/foo"), kind=RefKind.BRANCH, name="main")

    processor.trigger_ref_metrics_pull(ref)

    assert scheduled == [(TaskType.PULL_PROJECT, "group/foo", ("group/foo", wildcard.pull))]


def test_trigger_environment_metrics_pull_existing_environment_refreshes_id():
    processor, store, scheduled = make_processor()
    store.set_project(Project("foo/bar"))
    store.set_environment(Environment(project_name="foo/bar", name="dev", id=5))

    processor.trigger_environment_metrics_pull(Environment(project_name="foo/bar", name="dev"))

    assert len(scheduled) == 1
    task_type, _, args = scheduled[0]
    assert task_type is TaskType.PULL_ENVIRONMENT_METRICS
    assert args[0].id == 5


def test_trigger_environment_metrics_pull_unknown_project_is_ignored():
    processor, _, scheduled = make_processor()

    processor.trigger_environment_metrics_pull(Environment(project_name="foo/baz", name="prod"))

    assert scheduled == []


def test_trigger_environment_metrics_pull_matching_project_updates_environment():
    updated = []

    def update(environment):
        environment.id = 42
        updated.append(environment.name)

    processor, store, scheduled = make_processor(update_environment=update)
    project = Project("foo/bar")
    project.pull.environments.enabled = True
    project.pull.environments.regexp = "^prod$"
    store.set_project(project)

    processor.trigger_environment_metrics_pull(Environment(project_name="foo/bar", name="prod"))
    processor.trigger_environment_metrics_pull(Environment(project_name="foo/bar", name="dev"))

    assert updated == ["prod"]
    assert len(scheduled) == 1
    assert scheduled[0][2][0].id == 42


def test_is_ref_matching_project_pull_refs():
    project = branch_project("foo", "^m")
    project.pull.refs.tags.enabled = False

    assert is_ref_matching_project_pull_refs(
        project.pull.refs, Ref(project=project, kind=RefKind.BRANCH, name="main")
    )
    assert not is_ref_matching_project_pull_refs(
        project.pull.refs, Ref(project=project, kind=RefKind.BRANCH, name="dev")
    )
    assert not is_ref_matching_project_pull_refs(
        project.pull.refs, Ref(project=project, kind=RefKind.TAG, name="main")
    )


def test_is_env_matching_project_pull_environments():
    project = Project("foo")
    project.pull.environments.enabled = True
    project.pull.environments.regexp = "^prod"
    environment = Environment(project_name="foo", name="production")

    assert is_env_matching_project_pull_environments(project.pull.environments, environment)

    project.pull.environments.enabled = False
    assert not is_env_matching_project_pull_environments(project.pull.environments, environment)

    project.pull.environments.enabled = True
    project.pull.environments.regexp = "["
    with pytest.raises(ValueError):
        is_env_matching_project_pull_environments(project.pull.environments, environment)


def test_wildcard_owner_filters():
    wildcard = Wildcard(owner=WildcardOwner(name="team", kind="group"))
    wildcard.pull.refs.branches.enabled = True
    wildcard.pull.refs.branches.regexp = ".*"
    wildcard.pull.environments.enabled = True
    wildcard.pull.environments.regexp = ".*"

    assert is_ref_matching_wildcard(
        wildcard, Ref(project=Project("team/app"), kind=RefKind.BRANCH, name="main")
    )
    assert not is_ref_matching_wildcard(
        wildcard, Ref(project=Project("other/app"), kind=RefKind.BRANCH, name="main")
    )
    assert is_env_matching_wildcard(wildcard, Environment(project_name="team/app", name="dev"))
    assert not is_env_matching_wildcard(
        wildcard, Environment(project_name="other/app", name="dev")
    )


def test_process_pipeline_event_merge_request():
    processor, store, scheduled = make_processor()
    ref = Ref(project=Project("group/foo"), kind=RefKind.MERGE_REQUEST, name="12")
    store.set_ref(ref)

    processor.process_pipeline_event(
        {
            "object_attributes": {"ref": "feature", "tag": False},
            "merge_request": {"iid": 12},
            "project": {"path_with_namespace": "group/foo"},
        }
    )

    assert [item[1] for item in scheduled] == [ref.key()]


def test_process_pipeline_event_tag():
    processor, store, scheduled = make_processor()
    ref = Ref(project=Project("group/foo"), kind=RefKind.TAG, name="v1.0.0")
    store.set_ref(ref)

    processor.process_pipeline_event(
        {
            "object_attributes": {"ref": "v1.0.0", "tag": True},
            "merge_request": None,
            "project": {"path_with_namespace": "group/foo"},
        }
    )

    assert [item[1] for item in scheduled] == [ref.key()]


def test_process_job_event_looks_up_project():
    gitlab = FakeGitLab(project={"path_with_namespace": "group/foo"})
    processor, store, scheduled = make_processor(gitlab=gitlab)
    ref = Ref(project=Project("group/foo"), kind=RefKind.BRANCH, name="main")
    store.set_ref(ref)

    processor.process_job_event({"ref": "main", "tag": False, "project_id": 7})

    assert gitlab.requested == ["7"]
    assert [item[1] for item in scheduled] == [ref.key()]


def test_process_job_event_gitlab_error():
    processor, store, scheduled = make_processor(gitlab=FakeGitLab(error=GitLabError("boom")))
    store.set_ref(Ref(project=Project("group/foo"), kind=RefKind.BRANCH, name="main"))

    processor.process_job_event({"ref": "main", "tag": False, "project_id": 7})

    assert scheduled == []


def test_process_push_event_deletes_branch():
    processor, store, _ = make_processor()
    ref = Ref(project=Project("group/foo"), kind=RefKind.BRANCH, name="feature")
    store.set_ref(ref)
    project = {"name": "foo", "path_with_namespace": "group/foo"}

    processor.process_push_event({"checkout_sha": "", "ref": "refs/tags/feature", "project": project})
    assert store.ref_exists(ref.key())

    processor.process_push_event({"checkout_sha": "abc", "ref": "refs/heads/feature", "project": project})
    assert store.ref_exists(ref.key())

    processor.process_push_event({"checkout_sha": None, "ref": "refs/heads/feature", "project": project})
    assert not store.ref_exists(ref.key())


def test_process_tag_event_deletes_tag():
    processor, store, _ = make_processor()
    ref = Ref(project=Project("group/foo"), kind=RefKind.TAG, name="v1")
    store.set_ref(ref)

    processor.process_tag_event(
        {
            "checkout_sha": "",
            "ref": "refs/tags/v1",
            "project": {"name": "foo", "path_with_namespace": "group/foo"},
        }
    )

    assert not store.ref_exists(ref.key())


@pytest.mark.parametrize(
    ("action", "kept"),
    [("close", False), ("merge", False), ("open", True), ("update", True)],
)
def test_process_merge_event(action, kept):
    processor, store, _ = make_processor()
    ref = Ref(project=Project("group/foo"), kind=RefKind.MERGE_REQUEST, name="3")
    store.set_ref(ref)

    processor.process_merge_event(
        {
            "project": {"path_with_namespace": "group/foo"},
            "object_attributes": {"iid": 3, "action": action},
        }
    )

    assert store.ref_exists(ref.key()) is kept


def test_process_deployment_event():
    processor, store, scheduled = make_processor()
    store.set_environment(Environment(project_name="group/foo", name="prod", id=9))

    processor.process_deployment_event(
        {"project": {"path_with_namespace": "group/foo"}, "environment": "prod"}
    )

    assert len(scheduled) == 1
    assert scheduled[0][0] is TaskType.PULL_ENVIRONMENT_METRICS
    assert scheduled[0][2][0].id == 9