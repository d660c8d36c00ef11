"""Download engine for version content."""

import logging
import tempfile
from dataclasses import dataclass
from threading import Event
from typing import IO

import requests

from .errors import OperationTimeout, Unavailable
from .models import BackupStats, Version
from .rate_limiter import AdaptiveRateLimiter
from .retry import RetryPolicy, call_with_timeout
from .utils import human_size

logger = logging.getLogger(__name__)


@dataclass
class FetchedContent:
    """Fully downloaded bytes of one version, spooled to memory or disk."""

    stream: IO[bytes]
    size: int

    def close(self) -> None:
        self.stream.close()

    def __enter__(self) -> "FetchedContent":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class ContentFetcher:
    """
    Downloads a version's binary content with retry and a timeout guard.

    ``fetch`` never raises for a broken version: it logs, records the skip in
    the run stats, and returns None so the backup can carry on.
    """

    def __init__(
        self,
        session: requests.Session,
        stats: BackupStats,
        stop_event: Event,
        retry: RetryPolicy | None = None,
        limiter: AdaptiveRateLimiter | None = None,
        request_timeout: float = 15.0,
        chunk_size: int = 1024 * 1024,
        spool_max_bytes: int = 8 * 1024 * 1024,
    ):
        self.session = session
        self.stats = stats
        self.stop_event = stop_event
        self.retry = retry or RetryPolicy()
        self.limiter = limiter
        self.request_timeout = request_timeout
        self.chunk_size = chunk_size
        self.spool_max_bytes = spool_max_bytes

    def fetch(
        self,
        version: Version,
        token: str,
        timeout: float | None,
        label: str | None = None,
    ) -> FetchedContent | None:
        """
        Download one version.

        Args:
            version: Version record; versions without a download URL are skipped
            token: Bearer token sent with the download request
            timeout: Overall limit for the whole transfer (None or 0 for none)
            label: Archive path used for logging and the skip record

        Returns:
            The downloaded content, or None if it is unavailable
        """
        label = label or version.display_name

        if not version.download_url:
            logger.info("No download URL for %s (version %s), skipping", label, version.id)
            self.stats.record_skip(label, "no download URL")
            return None

        if self.stop_event.is_set():
            self.stats.record_skip(label, "backup interrupted")
            return None

        cancel = Event()
        slot = self.stats.start_download(label, version.storage_size or 0)
        try:
            content = call_with_timeout(
                self._download, timeout, f"download {label}", version, token, cancel, slot
            )
        except OperationTimeout as e:
            cancel.set()
            logger.warning("Skipping %s: %s", label, e)
            self.stats.record_skip(label, str(e))
            return None
        except Unavailable as e:
            logger.warning("Skipping %s: %s", label, e.reason)
            self.stats.record_skip(label, e.reason)
            return None
        except (requests.RequestException, OSError) as e:
            logger.error("Failed to download %s: %s", label, e)
            self.stats.record_skip(label, f"download failed: {e}")
            return None
        finally:
            self.stats.finish_download(slot)

        logger.debug("Downloaded %s (%s)", label, human_size(content.size))
        return content

    def _download(self, version: Version, token: str, cancel: Event, slot: int) -> FetchedContent:
        def attempt() -> FetchedContent:
            spool = tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes)
            try:
                with self.session.get(
                    version.download_url,
                    headers={"Authorization": f"Bearer {token}"},
                    stream=True,
                    timeout=self.request_timeout,
                ) as response:
                    response.raise_for_status()
                    downloaded = 0
                    for chunk in response.iter_content(self.chunk_size):
                        if cancel.is_set() or self.stop_event.is_set():
                            raise Unavailable("download cancelled")
                        if chunk:
                            spool.write(chunk)
                            downloaded += len(chunk)
                            self.stats.update_download(slot, downloaded)
                spool.seek(0)
                return FetchedContent(spool, downloaded)
            except BaseException:
                spool.close()
                raise

        return self.retry.call(
            attempt,
            f"download of version {version.id}",
            limiter=self.limiter,
            stop_event=self.stop_event,
        )
