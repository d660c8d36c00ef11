"""Terminal display and UI components for APS Backup."""

import sys
from datetime import datetime
from threading import Event, Lock, Thread
from typing import TYPE_CHECKING, TextIO

from .utils import (
    get_terminal_width,
    human_size,
    human_speed,
    human_time,
    is_tty,
    truncate_path,
)

if TYPE_CHECKING:
    from .models import BackupStats
    from .rate_limiter import AdaptiveRateLimiter

# Where messages go; switched to stderr when the archive itself goes to stdout
_console: TextIO = sys.stdout


def use_stderr() -> None:
    global _console
    _console = sys.stderr


def _emit(text: str = "", end: str = "\n") -> None:
    print(text, end=end, file=_console, flush=True)


class Colors:
    """ANSI color codes for terminal output."""

    RED = "\033[91m"
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    BLUE = "\033[94m"
    MAGENTA = "\033[95m"
    CYAN = "\033[96m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    RESET = "\033[0m"
    HIDE_CURSOR = "\033[?25l"
    SHOW_CURSOR = "\033[?25h"

    _disabled = False

    @classmethod
    def disable(cls) -> None:
        """Blank out every code (for non-TTY output)."""
        if cls._disabled:
            return
        cls._disabled = True
        for attr in dir(cls):
            if not attr.startswith("_") and attr.isupper():
                setattr(cls, attr, "")


if not is_tty():
    Colors.disable()


def make_bar(percent: float, width: int = 30) -> str:
    percent = max(0, min(100, percent))
    filled = int((percent / 100) * width)
    return "█" * filled + "░" * (width - filled)


def print_banner() -> None:
    C, B, D, R = Colors.CYAN, Colors.BOLD, Colors.DIM, Colors.RESET
    _emit()
    _emit(f"{C}╔════════════════════════════════════════════════════════════╗{R}")
    _emit(f"{C}║{R}{B}                       APS BACKUP                           {R}{C}║{R}")
    _emit(f"{C}║{R} {D}Hubs → Projects → Folders → Versions, into one ZIP archive{R} {C}║{R}")
    _emit(f"{C}╚════════════════════════════════════════════════════════════╝{R}")
    _emit()


def print_header(text: str) -> None:
    width = min(get_terminal_width() - 4, 76)
    line_len = max(0, width - len(text) - 5)
    _emit(f"\n{Colors.MAGENTA}{Colors.BOLD}{'─' * 3} {text} {'─' * line_len}{Colors.RESET}")


def print_success(text: str) -> None:
    _emit(f"  {Colors.GREEN}✓{Colors.RESET} {text}")


def print_error(text: str) -> None:
    _emit(f"  {Colors.RED}✗{Colors.RESET} {text}")


def print_warning(text: str) -> None:
    _emit(f"  {Colors.YELLOW}⚠{Colors.RESET} {text}")


def print_info(text: str) -> None:
    _emit(f"  {Colors.CYAN}ℹ{Colors.RESET} {text}")


def ask_yes_no(question: str, default: bool = True) -> bool:
    """Ask a yes/no question on the terminal."""
    hint = "[Y/n]" if default else "[y/N]"

    while True:
        try:
            ans = input(f"  {Colors.CYAN}?{Colors.RESET} {question} {Colors.DIM}{hint}{Colors.RESET}: ")
        except (EOFError, KeyboardInterrupt):
            _emit()
            return default

        ans = ans.strip().lower()
        if not ans:
            return default
        if ans in ("y", "yes"):
            return True
        if ans in ("n", "no"):
            return False
        print_warning("Please enter 'y' or 'n'.")


def print_summary(stats: "BackupStats", destination: str, archive_bytes: int | None = None) -> None:
    """Print the end-of-run report."""
    if stats.interrupted:
        print_header(f"{Colors.YELLOW}BACKUP INTERRUPTED{Colors.RESET}")
    else:
        print_header(f"{Colors.GREEN}BACKUP COMPLETE{Colors.RESET}")

    _emit()
    _emit(f"  {Colors.BOLD}Run{Colors.RESET}")
    _emit(f"    Completed:    {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    _emit(f"    Duration:     {human_time(stats.elapsed_seconds)}")
    _emit(f"    Archive:      {destination}"
          + (f" ({human_size(archive_bytes)})" if archive_bytes is not None else ""))
    _emit()

    _emit(f"  {Colors.BOLD}Content{Colors.RESET}")
    _emit(f"    Hubs / projects:  {stats.hubs:,} / {stats.projects:,}")
    _emit(f"    Folders / items:  {stats.folders:,} / {stats.items:,}")
    _emit(f"    {Colors.GREEN}Versions saved:{Colors.RESET}   {stats.versions_archived:,} "
          f"({human_size(stats.bytes_archived)})")
    if stats.versions_skipped:
        _emit(f"    {Colors.YELLOW}Versions skipped:{Colors.RESET} {stats.versions_skipped:,}")
    if stats.listings_failed:
        _emit(f"    {Colors.RED}Failed listings:{Colors.RESET}  {stats.listings_failed:,}")
    _emit()

    _emit(f"  {'─' * 60}")
    if stats.is_complete:
        _emit(f"  {Colors.GREEN}✓{Colors.RESET} {Colors.BOLD}All done!{Colors.RESET} Workspace safely archived.")
    elif stats.interrupted:
        _emit(f"  {Colors.YELLOW}⚠{Colors.RESET} Interrupted. The archive holds what was saved so far.")
    else:
        _emit(f"  {Colors.YELLOW}⚠{Colors.RESET} Completed with omissions. See _backup_manifest.json in the archive.")
    _emit(f"  {'─' * 60}")
    _emit()


class ProgressDisplay:
    """Live, in-place progress: two summary lines plus one line per download slot."""

    REFRESH_INTERVAL = 0.5

    def __init__(
        self,
        stats: "BackupStats",
        rate_limiter: "AdaptiveRateLimiter",
        max_slots: int = 4,
    ):
        self.stats = stats
        self.rate_limiter = rate_limiter
        self.max_slots = max_slots
        self.total_lines = 2 + max_slots

        self._lock = Lock()
        self._stop = Event()
        self._thread: Thread | None = None
        self._initialized = False

    def start(self) -> None:
        self._initialized = False
        self._stop.clear()
        _emit(Colors.HIDE_CURSOR, end="")
        self._thread = Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=1)
        self._render()
        _emit(Colors.SHOW_CURSOR, end="")

    def _run(self) -> None:
        while not self._stop.is_set():
            self._render()
            self._stop.wait(self.REFRESH_INTERVAL)

    def _lines(self) -> list[str]:
        s = self.stats
        lines = [
            f"  {Colors.CYAN}Saved{Colors.RESET} {s.versions_archived:,} versions "
            f"({human_size(s.bytes_archived)})  {human_speed(s.speed_bps):>10}  "
            f"Skipped: {s.versions_skipped:,}  Elapsed: {human_time(s.elapsed_seconds)}",
        ]

        throttle = f" {Colors.YELLOW}[Throttled]{Colors.RESET}" if self.rate_limiter.is_throttled else ""
        lines.append(
            f"  {Colors.DIM}Hubs {s.hubs}  Projects {s.projects}  Folders {s.folders}  "
            f"Items {s.items}  Active {s.active_count}/{self.max_slots}{Colors.RESET}{throttle}"
        )

        active = s.get_active_downloads()[: self.max_slots]
        for i in range(self.max_slots):
            if i < len(active):
                dl = active[i]
                size = human_size(dl.downloaded_bytes, 1)
                lines.append(
                    f"  {Colors.DIM}#{i + 1}{Colors.RESET} "
                    f"[{Colors.BLUE}{make_bar(dl.progress_percent, 20)}{Colors.RESET}] "
                    f"{size:>10} {truncate_path(dl.path, 45)}"
                )
            else:
                lines.append(f"  {Colors.DIM}#{i + 1} [{'░' * 20}] {'':>10} (idle){Colors.RESET}")
        return lines

    def _render(self) -> None:
        with self._lock:
            lines = self._lines()
            if not self._initialized:
                _console.write("\n" * self.total_lines)
                self._initialized = True
            _console.write(f"\033[{self.total_lines}A")
            for line in lines:
                _console.write(f"\r\033[K{line}\n")
            _console.flush()
