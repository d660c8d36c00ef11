"""Typed accessor over the APS Data Management directory endpoints."""

import logging
from typing import Any
from urllib.parse import quote

import requests

from .config import DEFAULT_API_BASE_URL
from .errors import DirectoryError
from .models import Hub, Node, Project, Version
from .rate_limiter import AdaptiveRateLimiter
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

USER_PROFILE_URL = "https://api.userprofile.autodesk.com/userinfo"

# Guard against a server that keeps handing back the same "next" link
MAX_PAGES = 1000


def _segment(identifier: str) -> str:
    return quote(identifier, safe="")


def _next_link(payload: dict[str, Any]) -> str | None:
    nxt = (payload.get("links") or {}).get("next")
    if isinstance(nxt, dict):
        nxt = nxt.get("href")
    return nxt or None


class DirectoryClient:
    """
    Read-only client for hubs, projects, folder contents and item versions.

    Every listing returns records in the order the service sends them and
    follows JSON:API pagination. Any transport, HTTP or decoding failure is
    reported as DirectoryError once the retry policy gives up.
    """

    def __init__(
        self,
        session: requests.Session,
        base_url: str = DEFAULT_API_BASE_URL,
        retry: RetryPolicy | None = None,
        limiter: AdaptiveRateLimiter | None = None,
        timeout: float = 15.0,
    ):
        self.session = session
        self.base_url = base_url.rstrip("/")
        self.retry = retry or RetryPolicy()
        self.limiter = limiter
        self.timeout = timeout

    def _get_json(self, url: str, token: str, description: str) -> dict[str, Any]:
        def attempt() -> dict[str, Any]:
            response = self.session.get(
                url,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response.json()

        try:
            return self.retry.call(attempt, description, limiter=self.limiter)
        except (requests.RequestException, ValueError) as e:
            raise DirectoryError(f"Failed to {description}", e) from e

    def _get_collection(self, url: str, token: str, description: str) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []
        next_url: str | None = url
        pages = 0
        while next_url:
            pages += 1
            if pages > MAX_PAGES:
                raise DirectoryError(f"Failed to {description}: too many pages")
            payload = self._get_json(next_url, token, description)
            data = payload.get("data") or []
            if isinstance(data, dict):
                data = [data]
            records.extend(data)
            next_url = _next_link(payload)
        logger.debug("%s: %d records", description, len(records))
        return records

    def list_hubs(self, token: str) -> list[Hub]:
        url = f"{self.base_url}/project/v1/hubs"
        return [Hub.from_api(d) for d in self._get_collection(url, token, "list hubs")]

    def list_projects(self, hub_id: str, token: str) -> list[Project]:
        url = f"{self.base_url}/project/v1/hubs/{_segment(hub_id)}/projects"
        records = self._get_collection(url, token, f"list projects of hub {hub_id}")
        return [Project.from_api(d, hub_id) for d in records]

    def list_folder_children(
        self,
        project: Project,
        folder_id: str | None,
        token: str,
        parent_path: str = "",
    ) -> list[Node]:
        """List a folder's children, or the project's top folders when folder_id is None."""
        if folder_id is None:
            url = (
                f"{self.base_url}/project/v1/hubs/{_segment(project.hub_id)}"
                f"/projects/{_segment(project.id)}/topFolders"
            )
            description = f"list top folders of project {project.id}"
        else:
            url = (
                f"{self.base_url}/data/v1/projects/{_segment(project.id)}"
                f"/folders/{_segment(folder_id)}/contents"
            )
            description = f"list contents of folder {folder_id}"

        nodes = []
        for record in self._get_collection(url, token, description):
            node = Node.from_api(record, parent_path)
            if node is None:
                logger.debug("Ignoring %s resource %s", record.get("type"), record.get("id"))
                continue
            nodes.append(node)
        return nodes

    def list_versions(self, project_id: str, item_id: str, token: str) -> list[Version]:
        url = (
            f"{self.base_url}/data/v1/projects/{_segment(project_id)}"
            f"/items/{_segment(item_id)}/versions"
        )
        records = self._get_collection(url, token, f"list versions of item {item_id}")
        return [Version.from_api(d) for d in records]

    def get_user_profile(self, token: str) -> dict[str, Any]:
        """Return the caller's profile (``name``, ``email``, ...)."""
        return self._get_json(USER_PROFILE_URL, token, "fetch user profile")
