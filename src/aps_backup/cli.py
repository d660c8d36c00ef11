"""Command-line interface for APS Backup."""

import argparse
import atexit
import contextlib
import logging
import os
import signal
import sys
from pathlib import Path
from threading import Event
from typing import Any

from .config import VERSION_POLICIES, Config

logger = logging.getLogger(__name__)


def setup_logging(log_file: Path) -> None:
    """Configure logging to file only (no console output)."""
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
    file_handler.setLevel(logging.DEBUG)

    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)


def apply_overrides(config: Config, args: argparse.Namespace) -> Config:
    """Command-line flags win over environment settings."""
    if getattr(args, "token", None):
        config.access_token = args.token
    if getattr(args, "output", None):
        config.output_path = args.output
    if getattr(args, "versions", None):
        config.version_policy = args.versions
    if getattr(args, "no_manifest", False):
        config.write_manifest = False
    if getattr(args, "run_timeout", None) is not None:
        config.run_timeout = args.run_timeout
    if getattr(args, "workers", None):
        config.max_concurrent_downloads = args.workers
    return config


def run_backup(args: argparse.Namespace, config: Config | None = None) -> int:
    """
    Run a whole-workspace or single-project backup.

    Returns:
        0 on a complete archive, 2 if entries were skipped, 1 on failure
    """
    from .display import (
        ProgressDisplay,
        print_banner,
        print_error,
        print_header,
        print_info,
        print_success,
        print_summary,
        print_warning,
        use_stderr,
    )
    from .errors import BackupError, NotFound, Unauthorized
    from .orchestrator import BackupOrchestrator

    config = apply_overrides(config or Config.from_env(), args)
    to_stdout = config.output_path == "-"
    if to_stdout:
        use_stderr()

    print_banner()
    print_header("Configuration")

    if bool(args.hub) != bool(args.project):
        print_error("--hub and --project must be given together")
        return 1

    errors = config.validate()
    if errors:
        for error in errors:
            print_error(error)
        return 1
    print_success("Configuration valid")

    log_file = Path.cwd() / "aps_backup.log"
    setup_logging(log_file)
    logger.info("=" * 50)
    logger.info("Backup started")
    print_info(f"Log file: {log_file}")

    stop_event = Event()

    def signal_handler(sig: int, frame: Any) -> None:
        if not stop_event.is_set():
            stop_event.set()
            print_warning("Gracefully stopping... the archive will still be finalized.")

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    orchestrator = BackupOrchestrator(config, stop_event=stop_event)

    try:
        profile = orchestrator.directory.get_user_profile(config.access_token)
        print_success(f"Connected: {profile.get('name', '?')} ({profile.get('email', 'no email')})")
    except BackupError as e:
        print_warning(f"Could not read user profile: {e}")

    delivery = args.delivery or ("buffer" if args.project else "stream")
    print_info(f"Mode: {'project ' + args.project if args.project else 'whole workspace'} ({delivery})")
    print_info(f"Versions: {config.version_policy}  Workers: {config.max_concurrent_downloads}")

    part_path: Path | None = None
    if to_stdout:
        out = sys.stdout.buffer
    else:
        dest = Path(config.output_path)
        dest.parent.mkdir(parents=True, exist_ok=True)
        part_path = dest.with_name(dest.name + ".part")
        out = open(part_path, "wb")

    display = None
    if not to_stdout and sys.stdout.isatty():
        display = ProgressDisplay(orchestrator.stats, orchestrator.limiter, config.max_concurrent_downloads)
        atexit.register(display.stop)

    print_header("Backing up")
    if display:
        display.start()

    failed: BaseException | None = None
    try:
        if args.project:
            orchestrator.run_project_backup(
                config.access_token, args.hub, args.project, output=out, delivery=delivery
            )
        else:
            orchestrator.run_full_backup(config.access_token, output=out, delivery=delivery)
    except (Unauthorized, NotFound) as e:
        failed = e
    except BackupError as e:
        failed = e
        logger.exception("Backup failed")
    finally:
        if display:
            display.stop()
            atexit.unregister(display.stop)
        if part_path is not None:
            out.close()

    if failed is not None:
        print_error(f"Backup failed: {failed}")
        if part_path is not None:
            with contextlib.suppress(OSError):
                part_path.unlink()
        return 1

    archive_bytes = None
    if part_path is not None:
        os.replace(part_path, config.output_path)
        archive_bytes = Path(config.output_path).stat().st_size

    print_summary(orchestrator.stats, config.output_path, archive_bytes)
    logger.info(
        "Backup completed: %d archived, %d skipped, %d failed listings",
        orchestrator.stats.versions_archived,
        orchestrator.stats.versions_skipped,
        orchestrator.stats.listings_failed,
    )
    return 0 if orchestrator.stats.is_complete else 2


def run_hubs(args: argparse.Namespace, config: Config | None = None) -> int:
    """Print every hub and project the token can see."""
    import requests

    from .directory import DirectoryClient
    from .display import Colors, print_error, print_header
    from .errors import DirectoryError
    from .retry import RetryPolicy

    config = apply_overrides(config or Config.from_env(), args)
    if not config.access_token:
        print_error("APS_ACCESS_TOKEN is required (run 'aps-backup auth')")
        return 1

    client = DirectoryClient(
        requests.Session(),
        base_url=config.api_base_url,
        retry=RetryPolicy(max_attempts=config.max_retries),
        timeout=config.request_timeout,
    )

    print_header("Hubs and projects")
    try:
        for hub in client.list_hubs(config.access_token):
            print(f"  {Colors.BOLD}{hub.display_name}{Colors.RESET}  {Colors.DIM}{hub.id}{Colors.RESET}")
            for project in client.list_projects(hub.id, config.access_token):
                print(f"      {project.display_name}  {Colors.DIM}{project.id}{Colors.RESET}")
    except DirectoryError as e:
        print_error(str(e))
        return 1
    print()
    return 0


def run_auth(args: argparse.Namespace, config: Config | None = None) -> int:
    """
    Walk through the three-legged OAuth flow and store the access token.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    from .auth import authorization_url, exchange_code
    from .display import Colors, ask_yes_no, print_error, print_header, print_info, print_success
    from .errors import BackupError

    config = config or Config.from_env()

    print_header("APS OAuth Setup")
    print()
    if not config.has_oauth_client():
        print_error("APS_CLIENT_ID, APS_CLIENT_SECRET and APS_CALLBACK_URL must be set.")
        print_info("Create an app at https://aps.autodesk.com/myapps and add them to .env")
        return 1

    print(f"  {Colors.BOLD}1.{Colors.RESET} Open this URL in your browser:")
    print()
    print(f"     {Colors.CYAN}{authorization_url(config)}{Colors.RESET}")
    print()
    print(f"  {Colors.BOLD}2.{Colors.RESET} Approve access; you are sent to {config.callback_url}")
    print(f"  {Colors.BOLD}3.{Colors.RESET} Copy the 'code' parameter from that address")
    print()

    try:
        code = input(f"  {Colors.CYAN}?{Colors.RESET} Enter the authorization code: ").strip()
    except (EOFError, KeyboardInterrupt):
        code = ""
    if not code:
        print_error("Authorization code is required.")
        return 1

    try:
        tokens = exchange_code(config, code)
    except BackupError as e:
        print_error(str(e))
        return 1

    print_success("Authentication successful!")
    print_info(f"The access token expires in {tokens.get('expires_in', '?')} seconds.")

    env_path = Path.cwd() / ".env"
    if ask_yes_no(f"Save APS_ACCESS_TOKEN to {env_path}?", True):
        _update_env_file(env_path, {"APS_ACCESS_TOKEN": tokens["access_token"]})
        print_success(f"Updated {env_path}")
    else:
        print_info("Export APS_ACCESS_TOKEN yourself before running a backup.")
    return 0


def _update_env_file(env_path: Path, values: dict[str, str]) -> None:
    """Set keys in a .env file, keeping every other line as it was."""
    lines: list[str] = []
    found: set[str] = set()

    if env_path.exists():
        for line in env_path.read_text(encoding="utf-8").splitlines():
            key = line.split("=", 1)[0].strip() if "=" in line else None
            if key in values and not line.lstrip().startswith("#"):
                lines.append(f'{key}="{values[key]}"')
                found.add(key)
            else:
                lines.append(line)

    missing = [key for key in values if key not in found]
    if missing and lines and lines[-1].strip():
        lines.append("")
    for key in missing:
        lines.append(f'{key}="{values[key]}"')

    env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aps-backup",
        description="Back up Autodesk Platform Services hubs and projects into a ZIP archive",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    backup = subparsers.add_parser("backup", help="Run a backup (default if no command specified)")
    for target in (parser, backup):
        target.add_argument("--token", help="Access token (default: APS_ACCESS_TOKEN)")
        target.add_argument("--hub", help="Hub id (with --project: back up one project)")
        target.add_argument("--project", help="Project id (requires --hub)")
        target.add_argument("-o", "--output", help="Archive path, or '-' for stdout (default: backup.zip)")
        target.add_argument(
            "--delivery",
            choices=("stream", "buffer"),
            help="Write the archive progressively or build it in memory first",
        )
        target.add_argument("--versions", choices=VERSION_POLICIES, help="Keep all versions or only the latest")
        target.add_argument("--workers", type=int, help="Concurrent downloads")
        target.add_argument("--run-timeout", type=float, help="Stop after this many seconds (0 = never)")
        target.add_argument("--no-manifest", action="store_true", help="Leave out _backup_manifest.json")

    hubs = subparsers.add_parser("hubs", help="List visible hubs and projects")
    hubs.add_argument("--token", help="Access token (default: APS_ACCESS_TOKEN)")

    subparsers.add_parser("auth", help="Obtain an access token through the OAuth flow")
    return parser


def cli_main(argv: list[str] | None = None) -> int:
    """CLI entry point with argument parsing."""
    args = build_parser().parse_args(argv)

    if args.command == "auth":
        return run_auth(args)
    if args.command == "hubs":
        return run_hubs(args)
    return run_backup(args)


if __name__ == "__main__":
    sys.exit(cli_main())
