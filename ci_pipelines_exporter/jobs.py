"""Pipeline job and bridge endpoints."""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

from .client import BaseClient, Page
from .models import Job, Pipeline, Ref, merge_request_iid_from_ref

log = logging.getLogger(__name__)

_PER_PAGE = 100


def _project_path(project: str) -> str:
    return f"projects/{quote(project, safe='')}"


class JobsAPI(BaseClient):
    """Access to the jobs and bridges of pipelines."""

    def list_ref_pipeline_jobs(self, ref: Ref) -> list[Job]:
        """Return the jobs of the ref's latest pipeline, with child pipelines if enabled."""
        if ref.latest_pipeline == Pipeline():
            log.debug(
                "most recent pipeline not defined, exiting..",
                extra={"project-name": ref.project.name, "ref": ref.name},
            )
            return []

        jobs = self.list_pipeline_jobs(ref.project.name, ref.latest_pipeline.id)
        if ref.project.pull.pipeline.jobs.from_child_pipelines:
            jobs.extend(
                self.list_pipeline_child_jobs(ref.project.name, ref.latest_pipeline.id)
            )
        return jobs

    def _paginate(self, path: str) -> list[tuple[Any, Page]]:
        pages = []
        page_number = 1
        while True:
            page = self.request("GET", path, {"page": page_number, "per_page": _PER_PAGE})
            pages.append((page.items or [], page))
            if page.is_last:
                return pages
            page_number = page.next_page

    def list_pipeline_jobs(self, project: str, pipeline_id: int) -> list[Job]:
        """Return every job of a pipeline."""
        path = f"{_project_path(project)}/pipelines/{pipeline_id}/jobs"
        pages = self._paginate(path)
        jobs = [Job.from_api(item) for items, _ in pages for item in items]
        log.debug(
            "found pipeline jobs",
            extra={
                "project-name-or-id": project,
                "pipeline-id": pipeline_id,
                "jobs-count": pages[-1][1].total_items,
            },
        )
        return jobs

    def list_pipeline_bridges(self, project: str, pipeline_id: int) -> list[dict[str, Any]]:
        """Return the raw bridge (trigger job) descriptions of a pipeline."""
        path = f"{_project_path(project)}/pipelines/{pipeline_id}/bridges"
        pages = self._paginate(path)
        bridges = [item for items, _ in pages for item in items]
        log.debug(
            "found pipeline bridges",
            extra={
                "project-name-or-id": project,
                "pipeline-id": pipeline_id,
                "bridges-count": pages[-1][1].total_items,
            },
        )
        return bridges

    def list_pipeline_child_jobs(self, project: str, parent_pipeline_id: int) -> list[Job]:
        """Return the jobs of every downstream pipeline reachable from a parent pipeline."""
        pending = [(project, parent_pipeline_id)]
        jobs: list[Job] = []
        while pending:
            current_project, current_pipeline = pending.pop()
            for bridge in self.list_pipeline_bridges(current_project, current_pipeline):
                downstream = bridge.get("downstream_pipeline")
                # A trigger job not yet executed has no downstream pipeline.
                if downstream is None:
                    continue
                child_project = str(downstream.get("project_id") or 0)
                child_pipeline = int(downstream.get("id") or 0)
                pending.append((child_project, child_pipeline))
                jobs.extend(self.list_pipeline_jobs(child_project, child_pipeline))
        return jobs

    def list_ref_most_recent_jobs(self, ref: Ref) -> list[Job]:
        """Refresh the jobs held for the ref with their most recent runs."""
        if not ref.latest_jobs:
            log.debug(
                "no jobs are currently held in memory, exiting..",
                extra={"project-name": ref.project.name, "ref": ref.name},
            )
            return []

        to_refresh = set(ref.latest_jobs)
        keyset = self.version().pipeline_jobs_keyset_pagination_supported()
        path = f"{_project_path(ref.project.name)}/jobs"
        params: dict[str, Any] | None
        if keyset:
            params = {"pagination": "keyset", "per_page": _PER_PAGE}
        else:
            params = {"page": 1, "per_page": _PER_PAGE}

        jobs: list[Job] = []
        while True:
            page = self.request("GET", path, params)
            for item in page.items or []:
                name = item.get("name") or ""
                if name in to_refresh:
                    job_ref = item.get("ref") or ""
                    try:
                        job_ref = merge_request_iid_from_ref(job_ref)
                    except ValueError:
                        pass
                    if job_ref == ref.name:
                        jobs.append(Job.from_api(item))
                        to_refresh.discard(name)

                if not to_refresh:
                    log.debug(
                        "found all jobs to refresh",
                        extra={
                            "project-name": ref.project.name,
                            "ref": ref.name,
                            "jobs-count": len(ref.latest_jobs),
                        },
                    )
                    return jobs

            if (keyset and not page.next_link) or (not keyset and page.is_last):
                log.warning(
                    "found some ref jobs but did not manage to refresh all jobs which were in memory",
                    extra={
                        "project-name": ref.project.name,
                        "ref": ref.name,
                        "jobs-count": page.total_items,
                        "not-found-jobs": ",".join(sorted(to_refresh)),
                    },
                )
                return jobs

            if keyset:
                path, params = page.next_link, None
            else:
                params = {"page": page.next_page, "per_page": _PER_PAGE}