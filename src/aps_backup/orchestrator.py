"""Backup orchestration: mode selection, sink selection and error containment."""

import io
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from threading import Event, Thread, Timer
from typing import IO, Any, Callable

import requests

from .archive import ArchiveSink, BufferedArchiveSink, StreamingArchiveSink, StreamPipe
from .config import Config
from .directory import DirectoryClient
from .errors import Unauthorized
from .fetcher import ContentFetcher
from .models import BackupStats
from .rate_limiter import AdaptiveRateLimiter
from .retry import RetryPolicy
from .walker import TreeWalker

logger = logging.getLogger(__name__)

MANIFEST_NAME = "_backup_manifest.json"
DELIVERY_MODES = ("stream", "buffer")


class BackupOrchestrator:
    """
    Runs one backup: either the whole workspace or a single project.

    Create one orchestrator per run. ``stats`` and ``limiter`` are exposed so
    a progress display can follow along. Only a missing token, an unknown
    hub/project, a failed root listing or an archive write failure make a run
    fail; everything else ends up as a skipped entry in the manifest.
    """

    def __init__(
        self,
        config: Config,
        session: requests.Session | None = None,
        stop_event: Event | None = None,
        directory: DirectoryClient | None = None,
    ):
        self.config = config
        self.session = session or requests.Session()
        self.stop_event = stop_event or Event()
        self.stats = BackupStats()
        self.limiter = AdaptiveRateLimiter(config.min_request_delay)
        self.retry = RetryPolicy(
            max_attempts=config.max_retries,
            backoff_base=config.backoff_base,
            backoff_factor=config.backoff_factor,
            backoff_max=config.backoff_max,
        )
        self.directory = directory or DirectoryClient(
            self.session,
            base_url=config.api_base_url,
            retry=self.retry,
            limiter=self.limiter,
            timeout=config.request_timeout,
        )
        self.fetcher = ContentFetcher(
            self.session,
            self.stats,
            self.stop_event,
            retry=self.retry,
            limiter=self.limiter,
            request_timeout=config.request_timeout,
            chunk_size=config.chunk_size,
            spool_max_bytes=config.spool_max_bytes,
        )
        self._executor: ThreadPoolExecutor | None = None

    # -- public entry points ----------------------------------------------

    def run_full_backup(
        self,
        token: str,
        output: IO[bytes] | None = None,
        delivery: str = "stream",
    ) -> IO[bytes]:
        """Back up every hub/project visible to ``token``."""
        self._require_token(token)
        walker = self._prepare(delivery)
        try:
            hubs = walker.list_hubs(token)
            pipe = self._open_sink(walker, output, delivery)
        except BaseException:
            self._shutdown()
            raise
        return self._deliver("workspace", {}, lambda: walker.walk_workspace(token, hubs), walker, pipe, output)

    def run_project_backup(
        self,
        token: str,
        hub_id: str,
        project_id: str,
        output: IO[bytes] | None = None,
        delivery: str = "buffer",
    ) -> IO[bytes]:
        """Back up a single project. Raises NotFound if it is not visible."""
        self._require_token(token)
        walker = self._prepare(delivery)
        try:
            project = walker.resolve_project(token, hub_id, project_id)
            pipe = self._open_sink(walker, output, delivery)
        except BaseException:
            self._shutdown()
            raise
        root = {"hub_id": hub_id, "project_id": project_id, "project": project.display_name}
        return self._deliver(
            "project",
            root,
            lambda: walker.walk_project(token, hub_id, project_id, project=project),
            walker,
            pipe,
            output,
        )

    def stop(self) -> None:
        """Ask a running backup to wind down; the archive is still finalized."""
        self.stop_event.set()

    # -- internals --------------------------------------------------------

    @staticmethod
    def _require_token(token: str | None) -> None:
        if not token or not token.strip():
            raise Unauthorized()

    def _prepare(self, delivery: str) -> TreeWalker:
        """Build the walker; its sink is attached once the root is resolved."""
        if delivery not in DELIVERY_MODES:
            raise ValueError(f"delivery must be one of {DELIVERY_MODES}, got {delivery!r}")

        workers = self.config.max_concurrent_downloads
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="aps-fetch")
        return TreeWalker(
            self.directory,
            self.fetcher,
            None,
            self.stats,
            self.stop_event,
            self._executor,
            listing_timeout=self.config.listing_timeout,
            download_timeout=self.config.download_timeout,
            version_policy=self.config.version_policy,
            max_pending=workers * 2,
        )

    @staticmethod
    def _open_sink(walker: TreeWalker, output: IO[bytes] | None, delivery: str) -> StreamPipe | None:
        pipe: StreamPipe | None = None
        if delivery == "buffer":
            walker.sink = BufferedArchiveSink()
        elif output is not None:
            walker.sink = StreamingArchiveSink(output, close_output=False)
        else:
            pipe = StreamPipe()
            walker.sink = StreamingArchiveSink(pipe.writer)
        return pipe

    def _shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def _deliver(
        self,
        mode: str,
        root: dict[str, Any],
        walk: Callable[[], Any],
        walker: TreeWalker,
        pipe: StreamPipe | None,
        output: IO[bytes] | None,
    ) -> IO[bytes]:
        if pipe is not None:
            def produce() -> None:
                try:
                    self._execute(mode, root, walk, walker)
                except BaseException as e:
                    logger.error("Backup failed: %s", e)
                    pipe.fail(e)

            Thread(target=produce, name="aps-backup", daemon=True).start()
            return pipe.reader

        payload = self._execute(mode, root, walk, walker)
        if payload is None:
            return output
        if output is not None:
            output.write(payload)
            return output
        return io.BytesIO(payload)

    def _execute(
        self,
        mode: str,
        root: dict[str, Any],
        walk: Callable[[], Any],
        walker: TreeWalker,
    ) -> bytes | None:
        sink: ArchiveSink = walker.sink
        timer: Timer | None = None
        if self.config.run_timeout > 0:
            timer = Timer(self.config.run_timeout, self._deadline_reached)
            timer.daemon = True
            timer.start()

        started = datetime.now(timezone.utc)
        logger.info("Backup started (%s)", mode)
        try:
            walk()
        except BaseException:
            walker.discard_pending()
            sink.abort()
            raise
        finally:
            if timer is not None:
                timer.cancel()
            self._shutdown()

        self.stats.interrupted = self.stop_event.is_set()
        self.stats.finish()
        try:
            if self.config.write_manifest:
                sink.add_entry(MANIFEST_NAME, self._manifest(mode, root, started))
            payload = sink.finalize()
        except BaseException:
            sink.abort()
            raise

        logger.info(
            "Backup finished: %d versions archived, %d skipped, %d listings failed",
            self.stats.versions_archived,
            self.stats.versions_skipped,
            self.stats.listings_failed,
        )
        return payload

    def _deadline_reached(self) -> None:
        logger.warning("Run deadline of %.0fs reached, stopping", self.config.run_timeout)
        self.stop_event.set()

    def _manifest(self, mode: str, root: dict[str, Any], started: datetime) -> bytes:
        manifest = {
            "mode": mode,
            **root,
            "version_policy": self.config.version_policy,
            "started_at": started.isoformat(),
            "finished_at": datetime.now(timezone.utc).isoformat(),
            "stats": self.stats.to_dict(),
            "skipped": [entry.to_dict() for entry in self.stats.skipped],
        }
        return json.dumps(manifest, indent=2).encode("utf-8")
