"""Repository comparison endpoints."""

from __future__ import annotations

import logging
from urllib.parse import quote

from .client import BaseClient, GitLabError

log = logging.getLogger(__name__)


class RepositoriesAPI(BaseClient):
    """Access to repository comparisons."""

    def get_commit_count_between_refs(self, project: str, from_ref: str, to_ref: str) -> int:
        """Count the commits between two refs of a project."""
        log.debug(
            "comparing refs",
            extra={"project-name": project, "from-ref": from_ref, "to-ref": to_ref},
        )
        page = self.request(
            "GET",
            f"projects/{quote(project, safe='')}/repository/compare",
            {"from": from_ref, "to": to_ref, "straight": True},
        )
        if not isinstance(page.items, dict):
            raise GitLabError("could not compare refs successfully")
        return len(page.items.get("commits") or [])