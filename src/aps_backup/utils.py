"""Utility functions for APS Backup."""

import random
import re
import shutil
import sys
from datetime import datetime

MAX_SEGMENT_LENGTH = 255
MAX_TAG_LENGTH = 64

# Characters that are illegal in file names or ZIP entry names, plus spaces
_ILLEGAL_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f ]')
_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def sanitize_name(name: str | None) -> str:
    """Make a display name safe for use as one archive path segment."""
    cleaned = _ILLEGAL_CHARS.sub("_", name or "")[:MAX_SEGMENT_LENGTH]
    if cleaned in ("", ".", ".."):
        return "_"
    return cleaned


def join_archive_path(*segments: str) -> str:
    """Join already-sanitized segments, dropping empty ones."""
    return "/".join(s for s in segments if s)


def versioned_name(name: str, version_number: int | None, fallback: str) -> str:
    """
    Name for an older version stored next to the item.

    ``name`` must already be sanitized. The version tag contains spaces, which
    no sanitized name does, so it can never equal a sibling's name. The stem
    is shortened first so the tag and extension survive the length limit.

    Examples:
        ("plan.pdf", 2, "x") -> "plan (v2).pdf"
        ("README", None, "abc") -> "README (abc)"
    """
    if version_number is not None:
        label = f"v{version_number}"
    else:
        # Version ids differ at the end ("...?version=3")
        label = sanitize_name(fallback)[-MAX_TAG_LENGTH:]
    tag = f" ({label})"

    stem, dot, ext = name.rpartition(".")
    if not dot or not stem or len(tag) + 1 + len(ext) >= MAX_SEGMENT_LENGTH:
        stem, ext = name, ""
    suffix = f"{tag}.{ext}" if ext else tag
    return stem[: MAX_SEGMENT_LENGTH - len(suffix)] + suffix


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an API timestamp such as '2024-05-01T10:20:30.0000000Z'."""
    if not value:
        return None
    text = _EXCESS_FRACTION.sub(r"\1", value.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def zip_date_time(moment: datetime | None) -> tuple[int, int, int, int, int, int]:
    """Convert a datetime to a ZIP entry timestamp (ZIP cannot go before 1980)."""
    if moment is None:
        moment = datetime.now()
    if moment.year < 1980:
        return (1980, 1, 1, 0, 0, 0)
    return (moment.year, moment.month, moment.day, moment.hour, moment.minute, moment.second)


def human_size(num_bytes: int, precision: int = 2) -> str:
    """Convert bytes to human-readable string (e.g., '1.5 GB')."""
    num = float(num_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB", "PB"]:
        if abs(num) < 1024.0:
            return f"{num:.{precision}f} {unit}"
        num /= 1024.0
    return f"{num:.{precision}f} EB"


def human_time(seconds: float | None) -> str:
    """Convert seconds to human-readable duration (e.g., '2h 15m')."""
    if seconds is None:
        return "calculating..."
    if seconds < 0:
        return "unknown"

    seconds = int(seconds)
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        m, s = divmod(seconds, 60)
        return f"{m}m {s}s"
    h, remainder = divmod(seconds, 3600)
    return f"{h}h {remainder // 60}m"


def human_speed(bytes_per_sec: float) -> str:
    """Convert bytes/sec to human-readable speed (e.g., '2.5 MB/s')."""
    if bytes_per_sec < 1024:
        return f"{bytes_per_sec:.0f} B/s"
    if bytes_per_sec < 1024 * 1024:
        return f"{bytes_per_sec / 1024:.1f} KB/s"
    return f"{bytes_per_sec / (1024 * 1024):.2f} MB/s"


def truncate_path(path: str, max_len: int = 40) -> str:
    """Truncate a path for display, keeping the end."""
    if len(path) <= max_len:
        return path
    return "..." + path[-(max_len - 3):]


def get_terminal_width() -> int:
    try:
        return shutil.get_terminal_size().columns
    except (OSError, ValueError):
        return 80


def is_tty() -> bool:
    """Check if stdout is a terminal (supports colors/cursor control)."""
    return sys.stdout.isatty()


def exponential_backoff_with_jitter(
    attempt: int,
    base: float = 1.0,
    factor: float = 2.0,
    max_delay: float = 60.0,
) -> float:
    """Calculate delay with exponential backoff and full jitter."""
    delay = min(max_delay, base * (factor ** attempt))
    return random.uniform(0, delay)
