"""Handling of GitLab webhook events."""

from __future__ import annotations

import copy
import logging
import re
from typing import Any, Callable, Mapping

from .client import GitLabError
from .models import (
    Config,
    Environment,
    EnvironmentsPull,
    Project,
    Ref,
    RefKind,
    RefsPull,
    Wildcard,
    ref_regexp,
)
from .tasks import TaskType

log = logging.getLogger(__name__)

Scheduler = Callable[..., Any]
EnvironmentUpdater = Callable[[Environment], None]

_BRANCH_PREFIX = "refs/heads/"
_TAG_PREFIX = "refs/tags/"


def is_ref_matching_project_pull_refs(refs_pull: RefsPull, ref: Ref) -> bool:
    """Tell whether the project's ref settings select the ref.

    Raises ValueError on an unknown ref kind or an invalid pattern.
    """
    if ref.kind is RefKind.BRANCH:
        enabled = refs_pull.branches.enabled
    elif ref.kind is RefKind.TAG:
        enabled = refs_pull.tags.enabled
    elif ref.kind is RefKind.MERGE_REQUEST:
        enabled = refs_pull.merge_requests.enabled
    else:
        raise ValueError(f"invalid ref kind {ref.kind}")

    if not enabled:
        return False
    return ref_regexp(refs_pull, ref.kind).search(ref.name) is not None


def is_env_matching_project_pull_environments(
    environments_pull: EnvironmentsPull, environment: Environment
) -> bool:
    """Tell whether the project's environment settings select the environment.

    Raises ValueError on an invalid pattern.
    """
    if not environments_pull.enabled:
        return False
    try:
        pattern = re.compile(environments_pull.regexp)
    except re.error as exc:
        raise ValueError(
            f"error parsing regexp: {exc}: `{environments_pull.regexp}`"
        ) from exc
    return pattern.search(environment.name) is not None


def _owner_matches(wildcard: Wildcard, project_name: str) -> bool:
    return not wildcard.owner.kind or wildcard.owner.name in project_name


def is_ref_matching_wildcard(wildcard: Wildcard, ref: Ref) -> bool:
    """Tell whether a wildcard could select the ref."""
    if not _owner_matches(wildcard, ref.project.name):
        return False
    return is_ref_matching_project_pull_refs(wildcard.pull.refs, ref)


def is_env_matching_wildcard(wildcard: Wildcard, environment: Environment) -> bool:
    """Tell whether a wildcard could select the environment."""
    if not _owner_matches(wildcard, environment.project_name):
        return False
    return is_env_matching_project_pull_environments(wildcard.pull.environments, environment)


def _section(event: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    return event.get(name) or {}


class WebhookProcessor:
    """Turns webhook payloads into metric pulls or ref deletions."""

    def __init__(
        self,
        config: Config,
        gitlab,
        store,
        schedule: Scheduler | None = None,
        update_environment: EnvironmentUpdater | None = None,
    ) -> None:
        self.config = config
        self.gitlab = gitlab
        self.store = store
        self._schedule_task = schedule
        self._update_environment = update_environment

    def _schedule(self, task_type: TaskType, unique_id: str, *args: Any) -> None:
        if self._schedule_task is not None:
            self._schedule_task(task_type, unique_id, *args)

    def _delete_ref(self, ref: Ref, reason: str) -> None:
        fields = {
            "project-name": ref.project.name,
            "ref": ref.name,
            "ref-kind": ref.kind.value,
            "reason": reason,
        }
        try:
            self.store.del_ref(ref.key())
        except Exception as exc:  # noqa: BLE001 - webhook handling is best effort
            log.error("deleting ref from the store: %s", exc, extra=fields)
            return
        log.info("deleted ref", extra=fields)

    # Events

    def process_pipeline_event(self, event: Mapping[str, Any]) -> None:
        attributes = _section(event, "object_attributes")
        ref_name = attributes.get("ref") or ""
        mr_iid = int(_section(event, "merge_request").get("iid") or 0)

        if mr_iid != 0:
            kind = RefKind.MERGE_REQUEST
            ref_name = str(mr_iid)
        elif attributes.get("tag"):
            kind = RefKind.TAG
        else:
            kind = RefKind.BRANCH

        project = Project(_section(event, "project").get("path_with_namespace") or "")
        self.trigger_ref_metrics_pull(Ref(project=project, kind=kind, name=ref_name))

    def process_job_event(self, event: Mapping[str, Any]) -> None:
        kind = RefKind.TAG if event.get("tag") else RefKind.BRANCH
        ref_name = event.get("ref") or ""

        try:
            data = self.gitlab.get_project(str(event.get("project_id") or 0)) or {}
        except GitLabError as exc:
            log.error("reading project from GitLab: %s", exc)
            return

        project = Project(data.get("path_with_namespace") or "")
        self.trigger_ref_metrics_pull(Ref(project=project, kind=kind, name=ref_name))

    def _process_deletion(
        self,
        event: Mapping[str, Any],
        prefix: str,
        kind: RefKind,
        failure: str,
        reason: str,
    ) -> None:
        if event.get("checkout_sha"):
            return
        project_data = _section(event, "project")
        ref = event.get("ref") or ""
        if not ref.startswith(prefix):
            log.error(failure, extra={"project-name": project_data.get("name"), "ref": ref})
            return
        project = Project(project_data.get("path_with_namespace") or "")
        self._delete_ref(Ref(project=project, kind=kind, name=ref[len(prefix):]), reason)

    def process_push_event(self, event: Mapping[str, Any]) -> None:
        """Delete the ref of a deleted branch."""
        self._process_deletion(
            event,
            _BRANCH_PREFIX,
            RefKind.BRANCH,
            "extracting branch name from ref",
            "received branch deletion push event from webhook",
        )

    def process_tag_event(self, event: Mapping[str, Any]) -> None:
        """Delete the ref of a deleted tag."""
        self._process_deletion(
            event,
            _TAG_PREFIX,
            RefKind.TAG,
            "extracting tag name from ref",
            "received tag deletion tag event from webhook",
        )

    def process_merge_event(self, event: Mapping[str, Any]) -> None:
        """Delete the ref of a closed or merged merge request."""
        attributes = _section(event, "object_attributes")
        project = Project(_section(event, "project").get("path_with_namespace") or "")
        ref = Ref(
            project=project,
            kind=RefKind.MERGE_REQUEST,
            name=str(int(attributes.get("iid") or 0)),
        )
        action = attributes.get("action")
        if action == "close":
            self._delete_ref(ref, "received merge request close event from webhook")
        elif action == "merge":
            self._delete_ref(ref, "received merge request merge event from webhook")
        else:
            log.debug(
                "received a non supported merge-request event type as a webhook",
                extra={"merge-request-event-type": action},
            )

    def process_deployment_event(self, event: Mapping[str, Any]) -> None:
        self.trigger_environment_metrics_pull(
            Environment(
                project_name=_section(event, "project").get("path_with_namespace") or "",
                name=event.get("environment") or "",
            )
        )

    # Triggers

    def _schedule_project_from_wildcards(
        self, project_name: str, matcher: Callable[[Wildcard], bool], fields: dict
    ) -> None:
        for wildcard in self.config.wildcards:
            try:
                matches = matcher(wildcard)
            except ValueError as exc:
                log.warning("checking if the webhook matches the wildcard config: %s", exc)
                continue
            if matches:
                self._schedule(TaskType.PULL_PROJECT, project_name, project_name, wildcard.pull)
                log.info(
                    "project not currently exported but its configuration matches a "
                    "wildcard, triggering a pull of the project",
                    extra=fields,
                )
            else:
                log.debug("project not matching wildcard, skipping..", extra=fields)
        log.info("done looking up for wildcards matching the project", extra=fields)

    def trigger_ref_metrics_pull(self, ref: Ref) -> None:
        """Schedule a metrics pull for the ref if the exporter is set to export it."""
        ref = copy.deepcopy(ref)
        fields = {"project-name": ref.project.name, "ref": ref.name, "ref-kind": ref.kind.value}

        try:
            ref_exists = self.store.ref_exists(ref.key())
        except Exception as exc:  # noqa: BLE001
            log.error("reading ref from the store: %s", exc, extra=fields)
            return

        if not ref_exists:
            project = Project(ref.project.name)
            try:
                project_exists = self.store.project_exists(project.key())
            except Exception as exc:  # noqa: BLE001
                log.error("reading project from the store: %s", exc, extra=fields)
                return

            if not project_exists and self.config.wildcards:
                self._schedule_project_from_wildcards(
                    ref.project.name,
                    lambda wildcard: is_ref_matching_wildcard(wildcard, ref),
                    fields,
                )
                return

            if not project_exists:
                log.info("ref not configured in the exporter, ignoring pipeline webhook", extra=fields)
                return

            try:
                self.store.get_project(project)
            except Exception as exc:  # noqa: BLE001
                log.error("reading project from the store: %s", exc, extra=fields)
                return

            try:
                matches = is_ref_matching_project_pull_refs(project.pull.refs, ref)
            except ValueError as exc:
                log.error("checking if the ref matches the project config: %s", exc)
                return

            if not matches:
                log.info("ref not configured in the exporter, ignoring pipeline webhook", extra=fields)
                return

            ref.project = project
            try:
                self.store.set_ref(ref)
            except Exception as exc:  # noqa: BLE001
                log.error("writing ref in the store: %s", exc, extra=fields)
                return

        log.info(
            "received a pipeline webhook from GitLab for a ref, triggering metrics pull",
            extra=fields,
        )
        self._schedule(TaskType.PULL_REF_METRICS, ref.key(), ref)

    def trigger_environment_metrics_pull(self, environment: Environment) -> None:
        """Schedule a metrics pull for the environment if the exporter is set to export it."""
        environment = copy.deepcopy(environment)
        fields = {"project-name": environment.project_name, "environment-name": environment.name}

        try:
            env_exists = self.store.environment_exists(environment.key())
        except Exception as exc:  # noqa: BLE001
            log.error("reading environment from the store: %s", exc, extra=fields)
            return

        if env_exists:
            # The stored environment at least knows its id.
            if environment.id == 0:
                try:
                    self.store.get_environment(environment)
                except Exception as exc:  # noqa: BLE001
                    log.error("reading environment from the store: %s", exc, extra=fields)
        else:
            project = Project(environment.project_name)
            try:
                project_exists = self.store.project_exists(project.key())
            except Exception as exc:  # noqa: BLE001
                log.error("reading project from the store: %s", exc, extra=fields)
                return

            if not project_exists and self.config.wildcards:
                self._schedule_project_from_wildcards(
                    environment.project_name,
                    lambda wildcard: is_env_matching_wildcard(wildcard, environment),
                    fields,
                )
                return

            if not project_exists:
                log.info(
                    "environment not configured in the exporter, ignoring deployment webhook",
                    extra=fields,
                )
                return

            try:
                self.store.get_project(project)
            except Exception as exc:  # noqa: BLE001
                log.error("reading project from the store: %s", exc, extra=fields)

            try:
                matches = is_env_matching_project_pull_environments(
                    project.pull.environments, environment
                )
            except ValueError as exc:
                log.error("checking if the env matches the project config: %s", exc)
                return

            if not matches:
                log.info(
                    "environment not configured in the exporter, ignoring deployment webhook",
                    extra=fields,
                )
                return

            # Deployment events do not carry the environment id.
            if self._update_environment is not None:
                try:
                    self._update_environment(environment)
                except Exception as exc:  # noqa: BLE001
                    log.error("updating event from GitLab API: %s", exc, extra=fields)
                    return

        log.info(
            "received a deployment webhook from GitLab for an environment, triggering metrics pull",
            extra=fields,
        )
        self._schedule(TaskType.PULL_ENVIRONMENT_METRICS, environment.key(), environment)