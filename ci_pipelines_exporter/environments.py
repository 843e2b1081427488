"""Project environment endpoints."""

from __future__ import annotations

import logging
import re
from urllib.parse import quote

from .client import BaseClient
from .models import Environment, Project, RefKind, parse_timestamp

log = logging.getLogger(__name__)

_PER_PAGE = 100


def _compile_filter(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"error parsing regexp: {exc}: `{pattern}`") from exc


class EnvironmentsAPI(BaseClient):
    """Access to the environments of a project."""

    def get_project_environments(self, project: Project) -> dict[str, Environment]:
        """Return the project's environments matching its pattern, keyed by environment key."""
        settings = project.pull.environments
        params: dict = {"per_page": _PER_PAGE}
        if settings.exclude_stopped:
            params["states"] = "available"
        pattern = _compile_filter(settings.regexp)
        path = f"projects/{quote(project.name, safe='')}/environments"

        environments: dict[str, Environment] = {}
        page_number = 1
        while True:
            page = self.request("GET", path, {**params, "page": page_number})
            for item in page.items or []:
                name = item.get("name") or ""
                if not pattern.search(name):
                    continue
                environment = Environment(
                    project_name=project.name,
                    id=int(item.get("id") or 0),
                    name=name,
                    output_sparse_status_metrics=project.output_sparse_status_metrics,
                    available=item.get("state") == "available",
                )
                environments[environment.key()] = environment
            if page.is_last:
                break
            page_number = page.next_page
        return environments

    def get_environment(self, project: str, environment_id: int) -> Environment:
        """Fetch one environment together with its latest deployment."""
        environment = Environment(project_name=project, id=environment_id)
        page = self.request(
            "GET", f"projects/{quote(project, safe='')}/environments/{environment_id}"
        )
        data = page.items
        if not data:
            return environment

        environment.name = data.get("name") or ""
        environment.external_url = data.get("external_url") or ""
        environment.available = data.get("state") == "available"

        last_deployment = data.get("last_deployment")
        if last_deployment is None:
            log.debug(
                "no deployments found for the environment",
                extra={"project-name": project, "environment-name": environment.name},
            )
            return environment

        deployable = last_deployment.get("deployable") or {}
        deployment = environment.latest_deployment
        deployment.ref_kind = RefKind.TAG if deployable.get("tag") else RefKind.BRANCH
        deployment.ref_name = last_deployment.get("ref") or ""
        deployment.job_id = int(deployable.get("id") or 0)
        deployment.duration_seconds = float(deployable.get("duration") or 0)
        deployment.status = deployable.get("status") or ""

        user = deployable.get("user")
        if user is not None:
            deployment.username = user.get("username") or ""

        commit = deployable.get("commit")
        if commit is not None:
            deployment.commit_short_id = commit.get("short_id") or ""

        created_at = parse_timestamp(last_deployment.get("created_at"))
        if created_at is not None:
            deployment.timestamp = created_at

        return environment