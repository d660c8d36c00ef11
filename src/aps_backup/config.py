"""Configuration management for APS Backup."""

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_API_BASE_URL = "https://developer.api.autodesk.com"
VERSION_POLICIES = ("all", "latest")


def _load_env_file(path: Path | None = None) -> None:
    """Load environment variables from a .env file if present.

    This is a minimal loader that supports simple ``KEY=VALUE`` lines.
    Existing environment variables are not overridden.
    """
    env_path = path or (Path.cwd() / ".env")
    try:
        lines = env_path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return

    for raw_line in lines:
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue

        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]

        if key and key not in os.environ:
            os.environ[key] = value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    """Application configuration."""

    # APS credentials
    access_token: str = ""
    client_id: str = ""
    client_secret: str = ""
    callback_url: str = ""
    api_base_url: str = DEFAULT_API_BASE_URL

    # Output
    output_path: str = "backup.zip"
    write_manifest: bool = True
    version_policy: str = "all"

    # Timeouts (seconds). request_timeout bounds each HTTP call; the listing and
    # download guards bound a whole operation including retries; 0 disables
    # the run deadline.
    request_timeout: float = 15.0
    listing_timeout: float = 15.0
    download_timeout: float = 300.0
    run_timeout: float = 0.0

    # Performance tuning
    max_concurrent_downloads: int = 4
    chunk_size: int = 1024 * 1024  # 1MB
    spool_max_bytes: int = 8 * 1024 * 1024
    min_request_delay: float = 0.0

    # Retry settings
    max_retries: int = 3
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    backoff_factor: float = 2.0

    @classmethod
    def from_env(cls) -> "Config":
        """Create config from environment variables."""
        # Explicitly-set environment variables take precedence over .env.
        _load_env_file()

        return cls(
            access_token=os.getenv("APS_ACCESS_TOKEN", ""),
            client_id=os.getenv("APS_CLIENT_ID", ""),
            client_secret=os.getenv("APS_CLIENT_SECRET", ""),
            callback_url=os.getenv("APS_CALLBACK_URL", ""),
            api_base_url=os.getenv("APS_API_BASE_URL", DEFAULT_API_BASE_URL).rstrip("/"),
            output_path=os.getenv("APS_BACKUP_OUTPUT", "backup.zip"),
            write_manifest=_env_bool("APS_WRITE_MANIFEST", True),
            version_policy=os.getenv("APS_VERSION_POLICY", "all").strip().lower(),
            request_timeout=float(os.getenv("APS_TIMEOUT", "15")),
            listing_timeout=float(os.getenv("APS_LISTING_TIMEOUT", "15")),
            download_timeout=float(os.getenv("APS_DOWNLOAD_TIMEOUT", "300")),
            run_timeout=float(os.getenv("APS_RUN_TIMEOUT", "0")),
            max_concurrent_downloads=int(os.getenv("APS_CONCURRENT_DOWNLOADS", "4")),
            max_retries=int(os.getenv("APS_MAX_RETRIES", "3")),
        )

    def has_oauth_client(self) -> bool:
        """Check whether the app credentials for the OAuth flow are present."""
        return bool(self.client_id and self.client_secret and self.callback_url)

    def validate(self) -> list[str]:
        """Validate configuration. Returns list of errors."""
        errors = []

        if not self.access_token:
            errors.append("APS_ACCESS_TOKEN is required (run 'aps-backup auth')")

        if self.version_policy not in VERSION_POLICIES:
            errors.append(
                f"version_policy must be one of {', '.join(VERSION_POLICIES)}, "
                f"got '{self.version_policy}'"
            )

        if self.max_concurrent_downloads < 1:
            errors.append("max_concurrent_downloads must be at least 1")
        elif self.max_concurrent_downloads > 16:
            errors.append("max_concurrent_downloads should not exceed 16")

        if self.request_timeout <= 0:
            errors.append("request_timeout must be positive")

        if self.listing_timeout < 0 or self.download_timeout < 0:
            errors.append("listing_timeout and download_timeout cannot be negative")

        if self.run_timeout < 0:
            errors.append("run_timeout cannot be negative")

        if self.max_retries < 1:
            errors.append("max_retries must be at least 1")

        if self.output_path and self.output_path != "-":
            out = Path(self.output_path)
            if out.exists() and out.is_dir():
                errors.append(f"Output path is a directory: {out}")

        return errors
