"""
APS Backup - archive an Autodesk Platform Services workspace into one ZIP.

Features:
- Whole-workspace or single-project backups
- Every file version kept, older ones named by version number
- Concurrent downloads with retry, backoff and adaptive throttling
- Streaming or in-memory archive assembly
- A manifest inside the archive listing anything that was skipped
"""

__version__ = "1.0.0"

from .archive import BufferedArchiveSink, StreamingArchiveSink
from .config import Config
from .directory import DirectoryClient
from .errors import (
    BackupError,
    DirectoryError,
    NotFound,
    SinkError,
    Unauthorized,
    Unavailable,
)
from .fetcher import ContentFetcher
from .models import BackupStats, Hub, Node, NodeKind, Project, Version
from .orchestrator import BackupOrchestrator
from .walker import TreeWalker

__all__ = [
    "BackupError",
    "BackupOrchestrator",
    "BackupStats",
    "BufferedArchiveSink",
    "Config",
    "ContentFetcher",
    "DirectoryClient",
    "DirectoryError",
    "Hub",
    "Node",
    "NodeKind",
    "NotFound",
    "Project",
    "SinkError",
    "StreamingArchiveSink",
    "TreeWalker",
    "Unauthorized",
    "Unavailable",
    "Version",
    "__version__",
]
