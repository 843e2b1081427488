"""Project tag endpoints."""

from __future__ import annotations

import re
from urllib.parse import quote

from .client import BaseClient
from .models import Project, Ref, RefKind, parse_timestamp, ref_regexp

_PER_PAGE = 100


def _compile_filter(pattern: str) -> re.Pattern:
    try:
        return re.compile(pattern)
    except re.error as exc:
        raise ValueError(f"error parsing regexp: {exc}: `{pattern}`") from exc


class TagsAPI(BaseClient):
    """Access to the tags of a project."""

    def _tags_path(self, project_name: str) -> str:
        return f"projects/{quote(project_name, safe='')}/repository/tags"

    def get_project_tags(self, project: Project) -> dict[str, Ref]:
        """Return the project's tags matching its tag pattern, keyed by ref key."""
        pattern = ref_regexp(project.pull.refs, RefKind.TAG)
        refs: dict[str, Ref] = {}
        page_number = 1
        while True:
            page = self.request(
                "GET", self._tags_path(project.name), {"page": page_number, "per_page": _PER_PAGE}
            )
            for tag in page.items or []:
                name = tag.get("name") or ""
                if pattern.search(name):
                    ref = Ref(project=project, kind=RefKind.TAG, name=name)
                    refs[ref.key()] = ref
            if page.is_last:
                break
            page_number = page.next_page
        return refs

    def get_project_most_recent_tag_commit(
        self, project_name: str, filter_regexp: str
    ) -> tuple[str, float]:
        """Return short id and Unix commit time of the first tag matching the filter.

        Returns ("", 0.0) when no tag matches.
        """
        pattern = _compile_filter(filter_regexp)
        page_number = 1
        while True:
            page = self.request(
                "GET", self._tags_path(project_name), {"page": page_number, "per_page": _PER_PAGE}
            )
            for tag in page.items or []:
                if pattern.search(tag.get("name") or ""):
                    commit = tag.get("commit") or {}
                    return (
                        commit.get("short_id") or "",
                        parse_timestamp(commit.get("committed_date")) or 0.0,
                    )
            if page.is_last:
                break
            page_number = page.next_page
        return "", 0.0