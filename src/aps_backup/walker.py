"""Depth-first traversal of hubs, projects, folders and item versions."""

import logging
from collections import deque
from concurrent.futures import Executor, Future
from threading import Event
from typing import Any, Callable, TypeVar

from .archive import ArchiveSink
from .directory import DirectoryClient
from .errors import DirectoryError, NotFound, OperationTimeout
from .fetcher import ContentFetcher, FetchedContent
from .models import BackupStats, Hub, Node, Project, Version
from .retry import call_with_timeout
from .utils import join_archive_path, sanitize_name, versioned_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


def order_versions(versions: list[Version]) -> list[Version]:
    """Newest first. Falls back to the service's order when numbers are missing."""
    if versions and all(v.version_number is not None for v in versions):
        return sorted(versions, key=lambda v: v.version_number, reverse=True)
    return list(versions)


class TreeWalker:
    """
    Walks a workspace or a single project and feeds every version into a sink.

    Listings run one at a time on the calling thread. Downloads are handed to
    ``executor`` and their results are appended to the sink in discovery
    order, only once each fetch has finished. A failed listing skips its
    subtree; siblings carry on. ``sink`` may be attached after construction,
    but must be set before a walk starts.
    """

    def __init__(
        self,
        directory: DirectoryClient,
        fetcher: ContentFetcher,
        sink: ArchiveSink | None,
        stats: BackupStats,
        stop_event: Event,
        executor: Executor,
        listing_timeout: float = 15.0,
        download_timeout: float = 300.0,
        version_policy: str = "all",
        max_pending: int = 8,
    ):
        self.directory = directory
        self.fetcher = fetcher
        self.sink = sink
        self.stats = stats
        self.stop_event = stop_event
        self.executor = executor
        self.listing_timeout = listing_timeout
        self.download_timeout = download_timeout
        self.version_policy = version_policy
        self.max_pending = max(1, max_pending)
        self._pending: deque[tuple[str, Version | None, Future | None]] = deque()

    # -- entry points -----------------------------------------------------

    def list_hubs(self, token: str) -> list[Hub]:
        """List the root hubs. Failure here is fatal to the run."""
        hubs = self._list(self.directory.list_hubs, "list hubs", token)
        logger.info("Found %d hubs", len(hubs))
        return hubs

    def resolve_project(self, token: str, hub_id: str, project_id: str) -> Project:
        """Find a hub and project by id among those visible to ``token``."""
        hub = next((h for h in self.list_hubs(token) if h.id == hub_id), None)
        if hub is None:
            raise NotFound("Hub", hub_id)

        projects = self._list(
            self.directory.list_projects, f"list projects of {hub.display_name}", hub.id, token
        )
        project = next((p for p in projects if p.id == project_id), None)
        if project is None:
            raise NotFound("Project", project_id)
        return project

    def walk_workspace(self, token: str, hubs: list[Hub] | None = None) -> None:
        """Back up every hub and project visible to ``token``.

        Entries are rooted at ``{hub}/{project}/``. A failure listing the hubs
        themselves propagates; everything below is contained.
        """
        if hubs is None:
            hubs = self.list_hubs(token)

        for hub in hubs:
            if self.stop_event.is_set():
                break
            self._walk_hub(hub, token)
        self._drain(0)

    def walk_project(
        self,
        token: str,
        hub_id: str,
        project_id: str,
        project: Project | None = None,
    ) -> Project:
        """Back up a single project, rooted at ``{project}/``.

        Raises NotFound if the hub or project is not visible. A failure
        listing the project's top folders propagates as DirectoryError.
        """
        if project is None:
            project = self.resolve_project(token, hub_id, project_id)

        self.stats.increment("hubs")
        self.stats.increment("projects")
        self._walk_folder(
            project, None, sanitize_name(project.display_name), token, frozenset({project.id})
        )
        self._drain(0)
        return project

    # -- traversal --------------------------------------------------------

    def _walk_hub(self, hub: Hub, token: str) -> None:
        self.stats.increment("hubs")
        hub_path = sanitize_name(hub.display_name)
        try:
            projects = self._list(self.directory.list_projects, f"list projects of {hub_path}", hub.id, token)
        except DirectoryError as e:
            logger.error("Skipping hub %s: %s", hub_path, e)
            self.stats.record_skip(hub_path + "/", str(e), listing=True)
            return

        if not projects:
            logger.info("No projects found for hub: %s", hub_path)
            self._enqueue_marker(hub_path)
            return

        for project in projects:
            if self.stop_event.is_set():
                return
            self.stats.increment("projects")
            project_path = join_archive_path(hub_path, sanitize_name(project.display_name))
            try:
                self._walk_folder(project, None, project_path, token, frozenset({project.id}))
            except DirectoryError as e:
                logger.error("Skipping project %s: %s", project_path, e)
                self.stats.record_skip(project_path + "/", str(e), listing=True)

    def _walk_folder(
        self,
        project: Project,
        folder_id: str | None,
        path: str,
        token: str,
        visited: frozenset[str],
    ) -> None:
        """List one folder (or the project root) and recurse into its children."""
        children = self._list(
            self.directory.list_folder_children, f"list {path}", project, folder_id, token, parent_path=path
        )
        if not children:
            self._enqueue_marker(path)
            return

        for node in children:
            if self.stop_event.is_set():
                return
            child_path = join_archive_path(path, sanitize_name(node.display_name))
            try:
                if node.id in visited:
                    raise DirectoryError(f"Cycle detected: {node.id} already visited on this branch")
                if node.is_folder:
                    self.stats.increment("folders")
                    self._walk_folder(project, node.id, child_path, token, visited | {node.id})
                else:
                    self.stats.increment("items")
                    self._walk_item(project, node, child_path, token)
            except DirectoryError as e:
                logger.error("Skipping %s: %s", child_path, e)
                self.stats.record_skip(child_path, str(e), listing=True)

    def _walk_item(self, project: Project, node: Node, path: str, token: str) -> None:
        versions = order_versions(
            self._list(self.directory.list_versions, f"list versions of {path}", project.id, node.id, token)
        )
        if not versions:
            logger.info("Item %s has no versions", path)
            return
        if self.version_policy == "latest":
            versions = versions[:1]

        parent, _, item_name = path.rpartition("/")
        for index, version in enumerate(versions):
            if index == 0:
                entry_path = path
            else:
                entry_path = join_archive_path(
                    parent, versioned_name(item_name, version.version_number, version.id)
                )
            self._enqueue_fetch(entry_path, version, token)

    def _list(self, fn: Callable[..., T], description: str, *args: Any, **kwargs: Any) -> T:
        """Run a listing under the timeout guard; every failure becomes DirectoryError."""
        try:
            return call_with_timeout(fn, self.listing_timeout, description, *args, **kwargs)
        except OperationTimeout as e:
            raise DirectoryError(f"Failed to {description}", e) from e
        except (KeyError, TypeError, AttributeError) as e:
            raise DirectoryError(f"Malformed response to {description}", e) from e

    # -- ordered emission -------------------------------------------------

    def _enqueue_marker(self, path: str) -> None:
        self._pending.append((path, None, None))
        self._drain(self.max_pending)

    def _enqueue_fetch(self, path: str, version: Version, token: str) -> None:
        future = self.executor.submit(self.fetcher.fetch, version, token, self.download_timeout, path)
        self._pending.append((path, version, future))
        self._drain(self.max_pending)

    def _drain(self, keep: int) -> None:
        """Append finished work to the sink, oldest first, until ``keep`` remain."""
        while len(self._pending) > keep:
            path, version, future = self._pending.popleft()
            if future is None:
                self.sink.add_directory_marker(path)
                continue

            try:
                content = future.result()
            except Exception as e:
                logger.exception("Unexpected error fetching %s", path)
                self.stats.record_skip(path, f"unexpected error: {e}")
                continue

            if content is None:
                continue
            self._append(path, version, content)

    def _append(self, path: str, version: Version, content: FetchedContent) -> None:
        with content:
            if self.sink.add_entry(path, content.stream, size=content.size, modified=version.created_at):
                self.stats.increment("versions_archived")
                self.stats.increment("bytes_archived", content.size)
                logger.info("Added %s to archive", path)
            else:
                self.stats.record_skip(path, "content could not be read; entry truncated")

    def discard_pending(self) -> None:
        """Drop queued work without touching the sink (used after a fatal error)."""
        while self._pending:
            _, _, future = self._pending.popleft()
            if future is None or future.cancel():
                continue
            try:
                content = future.result()
            except Exception:
                continue
            if content is not None:
                content.close()
