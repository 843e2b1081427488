"""Project lookup and wildcard listing endpoints."""

from __future__ import annotations

import copy
import logging
import re
from typing import Any
from urllib.parse import quote

from .client import BaseClient, GitLabError
from .models import Project, Wildcard

log = logging.getLogger(__name__)

_PER_PAGE = 100


class ProjectsAPI(BaseClient):
    """Access to projects."""

    def get_project(self, name: str) -> dict[str, Any]:
        """Fetch the raw API description of a project."""
        log.debug("reading project", extra={"project-name": name})
        page = self.request("GET", f"projects/{quote(name, safe='')}")
        return page.items

    def list_projects(self, wildcard: Wildcard) -> list[Project]:
        """List the projects a wildcard selects, carrying over its pull settings."""
        owner = wildcard.owner
        log_fields = {
            "wildcard-search": wildcard.search,
            "wildcard-owner-kind": owner.kind,
            "wildcard-owner-name": owner.name,
            "wildcard-owner-include-subgroups": owner.include_subgroups,
            "wildcard-archived": wildcard.archived,
        }
        log.debug("listing all projects from wildcard", extra=log_fields)

        # The API also returns projects the owner merely has access to; keep only
        # those actually belonging to the owner.
        owner_pattern = re.compile(f"^{owner.name}/" if owner.name else ".*")

        params: dict[str, Any] = {
            "archived": wildcard.archived,
            "search": wildcard.search,
            "simple": True,
            "per_page": _PER_PAGE,
        }
        if owner.kind == "user":
            path = f"users/{quote(owner.name, safe='')}/projects"
        elif owner.kind == "group":
            path = f"groups/{quote(owner.name, safe='')}/projects"
            params["with_shared"] = False
            params["include_subgroups"] = owner.include_subgroups
        else:
            path = "projects"

        projects: list[Project] = []
        page_number = 1
        while True:
            try:
                page = self.request("GET", path, {**params, "page": page_number})
            except GitLabError as exc:
                raise GitLabError(
                    f"unable to list projects with search pattern '{wildcard.search}' "
                    f"from the GitLab API : {exc}",
                    status_code=exc.status_code,
                ) from exc

            for item in page.items or []:
                path_with_namespace = item.get("path_with_namespace") or ""
                if not owner_pattern.search(path_with_namespace):
                    log.debug(
                        "project path not matching owner's name, skipping",
                        extra={
                            **log_fields,
                            "project-id": item.get("id"),
                            "project-name": path_with_namespace,
                        },
                    )
                    continue
                projects.append(
                    Project(
                        name=path_with_namespace,
                        pull=copy.deepcopy(wildcard.pull),
                        output_sparse_status_metrics=wildcard.output_sparse_status_metrics,
                    )
                )

            if page.is_last:
                break
            page_number = page.next_page
        return projects