"""HTTP client foundation for the GitLab API."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Mapping

import requests

from .version import GitLabVersion

log = logging.getLogger(__name__)

USER_AGENT = "ci-pipelines-exporter"
READINESS_TIMEOUT = 5.0


class GitLabError(Exception):
    """Raised when the GitLab API cannot be reached or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ClientConfig:
    url: str
    token: str = ""
    user_agent_version: str = ""
    disable_tls_verify: bool = False
    readiness_url: str = ""
    rate_limiter: Callable[[], None] | None = None


@dataclass
class Page:
    """One decoded API response together with its pagination headers."""

    items: Any
    current_page: int = 0
    next_page: int = 0
    total_items: int = 0
    next_link: str = ""

    @property
    def is_last(self) -> bool:
        return self.current_page >= self.next_page


def new_http_session(disable_tls_verify: bool) -> requests.Session:
    """Create a session honouring proxy environment variables."""
    session = requests.Session()
    session.verify = not disable_tls_verify
    return session


def _header_int(headers: Mapping[str, str], name: str) -> int:
    try:
        return int(headers.get(name, "") or 0)
    except ValueError:
        return 0


def _encode_value(value: Any) -> Any:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _encode_params(params: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: _encode_value(v) for k, v in (params or {}).items() if v is not None}


class BaseClient:
    """Issues rate-limited requests against the GitLab REST API."""

    def __init__(
        self,
        url: str,
        *,
        token: str = "",
        user_agent_version: str = "",
        session: requests.Session | None = None,
        rate_limiter: Callable[[], None] | None = None,
        readiness_url: str = "",
        readiness_session: requests.Session | None = None,
        readiness_timeout: float = READINESS_TIMEOUT,
        request_timeout: float | None = None,
    ) -> None:
        self.url = url
        self.api_url = f"{url.rstrip('/')}/api/v4"
        self.token = token
        self.user_agent = f"{USER_AGENT}-{user_agent_version}"
        self.session = session if session is not None else requests.Session()
        self.rate_limiter = rate_limiter
        self.readiness_url = readiness_url
        self.readiness_session = readiness_session
        self.readiness_timeout = readiness_timeout
        self.request_timeout = request_timeout
        self.requests_counter = 0
        self.requests_limit = 0
        self.requests_remaining = 0
        self._counter_lock = threading.Lock()
        self._version_lock = threading.RLock()
        self._version = GitLabVersion()

    @classmethod
    def from_config(cls, config: ClientConfig):
        return cls(
            config.url,
            token=config.token,
            user_agent_version=config.user_agent_version,
            session=new_http_session(config.disable_tls_verify),
            rate_limiter=config.rate_limiter,
            readiness_url=config.readiness_url,
            readiness_session=new_http_session(config.disable_tls_verify),
        )

    def readiness_check(self) -> None:
        """Raise GitLabError unless the readiness URL answers 200."""
        if self.readiness_session is None:
            raise GitLabError("readiness http client not configured")
        try:
            response = self.readiness_session.get(
                self.readiness_url, timeout=self.readiness_timeout
            )
        except requests.RequestException as exc:
            raise GitLabError(str(exc)) from exc
        if response.status_code != 200:
            raise GitLabError(
                f"HTTP error: {response.status_code}", status_code=response.status_code
            )

    def update_version(self, version: GitLabVersion) -> None:
        with self._version_lock:
            self._version = version

    def version(self) -> GitLabVersion:
        with self._version_lock:
            return self._version

    def _rate_limit(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter()
        with self._counter_lock:
            self.requests_counter += 1

    def _headers(self) -> dict[str, str]:
        headers = {"User-Agent": self.user_agent, "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def _update_requests_remaining(self, headers: Mapping[str, str]) -> None:
        remaining = headers.get("ratelimit-remaining")
        if remaining:
            self.requests_remaining = _header_int(headers, "ratelimit-remaining")
        limit = headers.get("ratelimit-limit")
        if limit:
            self.requests_limit = _header_int(headers, "ratelimit-limit")

    def request(
        self, method: str, path: str, params: Mapping[str, Any] | None = None
    ) -> Page:
        """Send a request to an API path (or absolute URL) and decode the answer."""
        self._rate_limit()
        if path.startswith(("http://", "https://")):
            url = path
        else:
            url = f"{self.api_url}/{path.lstrip('/')}"
        try:
            response = self.session.request(
                method,
                url,
                params=_encode_params(params),
                headers=self._headers(),
                timeout=self.request_timeout,
            )
        except requests.RequestException as exc:
            raise GitLabError(f"{method} {url}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            raise GitLabError(
                f"{method} {response.url}: {response.status_code} {response.text.strip()}",
                status_code=response.status_code,
            )

        self._update_requests_remaining(response.headers)

        items: Any = None
        if response.content.strip():
            try:
                items = response.json()
            except ValueError as exc:
                raise GitLabError(f"{method} {response.url}: invalid JSON: {exc}") from exc

        return Page(
            items=items,
            current_page=_header_int(response.headers, "X-Page"),
            next_page=_header_int(response.headers, "X-Next-Page"),
            total_items=_header_int(response.headers, "X-Total"),
            next_link=response.links.get("next", {}).get("url", ""),
        )