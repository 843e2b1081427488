"""Project branch endpoints."""

from __future__ import annotations

import logging
from urllib.parse import quote

from .client import BaseClient
from .models import Project, Ref, RefKind, parse_timestamp, ref_regexp

log = logging.getLogger(__name__)

_PER_PAGE = 100


class BranchesAPI(BaseClient):
    """Access to the branches of a project."""

    def get_project_branches(self, project: Project) -> dict[str, Ref]:
        """Return the project's branches matching its branch pattern, keyed by ref key."""
        pattern = ref_regexp(project.pull.refs, RefKind.BRANCH)
        path = f"projects/{quote(project.name, safe='')}/repository/branches"
        refs: dict[str, Ref] = {}
        page_number = 1
        while True:
            page = self.request("GET", path, {"page": page_number, "per_page": _PER_PAGE})
            for branch in page.items or []:
                name = branch.get("name") or ""
                if pattern.search(name):
                    ref = Ref(project=project, kind=RefKind.BRANCH, name=name)
                    refs[ref.key()] = ref
            if page.is_last:
                break
            page_number = page.next_page
        return refs

    def get_branch_latest_commit(self, project: str, branch: str) -> tuple[str, float]:
        """Return the short id and Unix commit time of the branch's latest commit."""
        log.debug("reading project branch", extra={"project-name": project, "branch": branch})
        page = self.request(
            "GET",
            f"projects/{quote(project, safe='')}/repository/branches/{quote(branch, safe='')}",
        )
        commit = (page.items or {}).get("commit") or {}
        return (
            commit.get("short_id") or "",
            parse_timestamp(commit.get("committed_date")) or 0.0,
        )