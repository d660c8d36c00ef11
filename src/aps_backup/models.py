"""Data models for APS Backup."""

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock
from typing import Any

from .utils import parse_timestamp


@dataclass(frozen=True)
class Hub:
    """A top-level grouping of projects."""

    id: str
    display_name: str

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Hub":
        attributes = data.get("attributes") or {}
        return cls(id=data["id"], display_name=attributes.get("name") or data["id"])


@dataclass(frozen=True)
class Project:
    """A project inside a hub."""

    id: str
    display_name: str
    hub_id: str

    @classmethod
    def from_api(cls, data: dict[str, Any], hub_id: str) -> "Project":
        attributes = data.get("attributes") or {}
        return cls(
            id=data["id"],
            display_name=attributes.get("name") or data["id"],
            hub_id=hub_id,
        )


class NodeKind(Enum):
    """Kind of a project tree node."""

    FOLDER = "folders"
    ITEM = "items"


@dataclass(frozen=True)
class Node:
    """A folder or item inside a project."""

    id: str
    kind: NodeKind
    display_name: str
    parent_path: str = ""

    @classmethod
    def from_api(cls, data: dict[str, Any], parent_path: str = "") -> "Node | None":
        """Build a node from a JSON:API resource, or None for unknown types."""
        try:
            kind = NodeKind(data.get("type"))
        except ValueError:
            return None
        attributes = data.get("attributes") or {}
        name = attributes.get("displayName") or attributes.get("name") or data["id"]
        return cls(id=data["id"], kind=kind, display_name=name, parent_path=parent_path)

    @property
    def is_folder(self) -> bool:
        return self.kind is NodeKind.FOLDER


@dataclass(frozen=True)
class Version:
    """One stored revision of an item."""

    id: str
    display_name: str
    download_url: str | None = None
    created_at: datetime | None = None
    version_number: int | None = None
    storage_size: int | None = None

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> "Version":
        attributes = data.get("attributes") or {}
        storage = (data.get("relationships") or {}).get("storage") or {}
        link = ((storage.get("meta") or {}).get("link") or {}).get("href")
        return cls(
            id=data["id"],
            display_name=attributes.get("displayName") or attributes.get("name") or data["id"],
            download_url=link or None,
            created_at=parse_timestamp(attributes.get("createTime")),
            version_number=attributes.get("versionNumber"),
            storage_size=attributes.get("storageSize"),
        )


@dataclass(frozen=True)
class SkippedEntry:
    """A path that was left out of the archive, and why."""

    path: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "reason": self.reason}


@dataclass
class ActiveDownload:
    """Track a version download in progress."""

    slot: int
    path: str
    total_bytes: int
    downloaded_bytes: int = 0
    start_time: float = field(default_factory=time.time)

    @property
    def progress_percent(self) -> float:
        """Get download progress as percentage (0 when the size is unknown)."""
        if self.total_bytes <= 0:
            return 0.0
        return min(100.0, (self.downloaded_bytes / self.total_bytes) * 100)


@dataclass
class BackupStats:
    """Thread-safe counters for a single backup run."""

    hubs: int = 0
    projects: int = 0
    folders: int = 0
    items: int = 0
    versions_archived: int = 0
    versions_skipped: int = 0
    listings_failed: int = 0
    bytes_archived: int = 0
    start_time: float = field(default_factory=time.time)
    end_time: float | None = None
    interrupted: bool = False

    _lock: Lock = field(default_factory=Lock)
    _skipped: list[SkippedEntry] = field(default_factory=list)
    _active: dict[int, ActiveDownload] = field(default_factory=dict)
    _next_slot: int = 0

    def increment(self, attr: str, value: int = 1) -> None:
        """Thread-safe increment of a stat attribute."""
        with self._lock:
            setattr(self, attr, getattr(self, attr) + value)

    def record_skip(self, path: str, reason: str, listing: bool = False) -> None:
        """Remember a path that did not make it into the archive."""
        with self._lock:
            self._skipped.append(SkippedEntry(path, reason))
            if listing:
                self.listings_failed += 1
            else:
                self.versions_skipped += 1

    @property
    def skipped(self) -> list[SkippedEntry]:
        with self._lock:
            return list(self._skipped)

    def start_download(self, path: str, total_bytes: int) -> int:
        """Register a new active download. Returns slot ID."""
        with self._lock:
            slot = self._next_slot
            self._next_slot += 1
            self._active[slot] = ActiveDownload(slot, path, total_bytes)
            return slot

    def update_download(self, slot: int, downloaded: int) -> None:
        with self._lock:
            if slot in self._active:
                self._active[slot].downloaded_bytes = downloaded

    def finish_download(self, slot: int) -> None:
        with self._lock:
            self._active.pop(slot, None)

    def get_active_downloads(self) -> list[ActiveDownload]:
        """Get list of active downloads sorted by slot."""
        with self._lock:
            return sorted(self._active.values(), key=lambda x: x.slot)

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._active)

    @property
    def elapsed_seconds(self) -> float:
        end = self.end_time if self.end_time is not None else time.time()
        return end - self.start_time

    @property
    def speed_bps(self) -> float:
        """Get archived bytes per second over the whole run."""
        if self.elapsed_seconds < 0.1:
            return 0.0
        return self.bytes_archived / self.elapsed_seconds

    @property
    def is_complete(self) -> bool:
        """True when nothing was skipped and the run was not interrupted."""
        return not self.interrupted and self.versions_skipped == 0 and self.listings_failed == 0

    def finish(self) -> None:
        self.end_time = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Summary used for the archive manifest."""
        return {
            "hubs": self.hubs,
            "projects": self.projects,
            "folders": self.folders,
            "items": self.items,
            "versions_archived": self.versions_archived,
            "versions_skipped": self.versions_skipped,
            "listings_failed": self.listings_failed,
            "bytes_archived": self.bytes_archived,
            "interrupted": self.interrupted,
            "complete": self.is_complete,
        }
