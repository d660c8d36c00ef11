"""ZIP archive sinks: streaming and buffered backends behind one interface."""

import io
import logging
import queue
import zipfile
from abc import ABC, abstractmethod
from datetime import datetime
from threading import Event, Lock
from typing import IO

from .errors import BackupError, SinkError
from .utils import zip_date_time

logger = logging.getLogger(__name__)

COPY_CHUNK = 1024 * 1024
_DIR_ATTR = (0o40775 << 16) | 0x10
_FILE_ATTR = 0o644 << 16


class _SourceReadError(Exception):
    def __init__(self, cause: OSError):
        self.cause = cause
        super().__init__(str(cause))


class ArchiveSink(ABC):
    """
    Accumulates named entries into a ZIP container.

    Appends are serialized; an entry whose content cannot be read is closed
    early and reported, while any failure writing the container itself raises
    SinkError. ``finalize`` may be called exactly once; after a fatal error
    ``abort`` drops the archive instead.
    """

    def __init__(self, fileobj: IO[bytes]):
        self._lock = Lock()
        self._finalized = False
        self.entry_count = 0
        self.damaged: list[str] = []
        try:
            self._zip = zipfile.ZipFile(fileobj, mode="w", compression=zipfile.ZIP_DEFLATED)
        except (OSError, ValueError) as e:
            raise SinkError(f"Cannot open archive: {e}") from e

    @property
    def finalized(self) -> bool:
        return self._finalized

    def _check_open(self) -> None:
        if self._finalized:
            raise SinkError("Archive has already been finalized")

    def add_entry(
        self,
        path: str,
        content: IO[bytes] | bytes | None,
        size: int | None = None,
        modified: datetime | None = None,
    ) -> bool:
        """
        Append one file entry. ``content`` may be a readable stream, bytes, or
        None for an empty file.

        Returns False if the content could not be read completely (the entry
        is kept, truncated, and listed in ``damaged``).
        """
        if content is None:
            content = b""
        if isinstance(content, (bytes, bytearray)):
            size = len(content)
            content = io.BytesIO(content)

        zinfo = zipfile.ZipInfo(path.lstrip("/"), date_time=zip_date_time(modified))
        zinfo.compress_type = zipfile.ZIP_DEFLATED
        zinfo.external_attr = _FILE_ATTR
        if size is not None:
            zinfo.file_size = size

        with self._lock:
            self._check_open()
            try:
                with self._zip.open(zinfo, mode="w", force_zip64=size is None) as dest:
                    self._copy(content, dest)
            except _SourceReadError as e:
                logger.error("Entry %s truncated, content read failed: %s", path, e.cause)
                self.damaged.append(path)
                self.entry_count += 1
                return False
            except (OSError, ValueError, RuntimeError, zipfile.LargeZipFile) as e:
                raise SinkError(f"Failed to append {path}: {e}") from e
            self.entry_count += 1
        return True

    @staticmethod
    def _copy(source: IO[bytes], dest: IO[bytes]) -> None:
        while True:
            try:
                chunk = source.read(COPY_CHUNK)
            except OSError as e:
                raise _SourceReadError(e) from e
            if not chunk:
                return
            dest.write(chunk)

    def add_directory_marker(self, path: str) -> None:
        """Append an empty directory entry such as ``"Hub/"``."""
        name = path.strip("/") + "/"
        zinfo = zipfile.ZipInfo(name, date_time=zip_date_time(None))
        zinfo.external_attr = _DIR_ATTR
        with self._lock:
            self._check_open()
            try:
                self._zip.writestr(zinfo, b"")
            except (OSError, ValueError, RuntimeError) as e:
                raise SinkError(f"Failed to append {name}: {e}") from e
            self.entry_count += 1

    def _close_zip(self) -> None:
        with self._lock:
            self._check_open()
            self._finalized = True
            try:
                self._zip.close()
            except (OSError, ValueError) as e:
                raise SinkError(f"Failed to finalize archive: {e}") from e

    def abort(self) -> None:
        """Detach from the output without writing the central directory."""
        with self._lock:
            if self._finalized:
                return
            self._finalized = True
            # ZipFile.close (and __del__) write nothing once fp is gone
            self._zip.fp = None
        logger.warning("Archive aborted after %d entries", self.entry_count)

    @abstractmethod
    def finalize(self) -> bytes | None:
        """Close the container; the result depends on the backend."""


class StreamingArchiveSink(ArchiveSink):
    """Writes compressed entries straight to ``output`` as they arrive."""

    def __init__(self, output: IO[bytes], close_output: bool = True):
        self.output = output
        self.close_output = close_output
        super().__init__(output)

    def finalize(self) -> None:
        """Write the central directory and signal end-of-stream."""
        try:
            self._close_zip()
        finally:
            if self.close_output and self._finalized:
                try:
                    self.output.close()
                except OSError as e:
                    raise SinkError(f"Failed to close archive output: {e}") from e
        logger.info("Streaming archive finalized with %d entries", self.entry_count)


class BufferedArchiveSink(ArchiveSink):
    """Builds the whole archive in memory and emits it once."""

    def __init__(self) -> None:
        self._buffer = io.BytesIO()
        super().__init__(self._buffer)

    def finalize(self) -> bytes:
        self._close_zip()
        payload = self._buffer.getvalue()
        logger.info(
            "Buffered archive finalized with %d entries (%d bytes)",
            self.entry_count,
            len(payload),
        )
        return payload


_EOF = object()


class StreamPipe:
    """
    Bounded in-process byte pipe.

    ``writer`` is handed to a StreamingArchiveSink on the producer thread;
    ``reader`` is a file-like object the consumer reads until EOF. A producer
    failure passed to ``fail`` is raised from the reader's next read.
    """

    def __init__(self, max_chunks: int = 64):
        self._queue: queue.Queue = queue.Queue(maxsize=max_chunks)
        self._reader_closed = Event()
        self.writer = _PipeWriter(self)
        self.reader = _PipeReader(self)

    def _put(self, item: object) -> None:
        while True:
            if self._reader_closed.is_set():
                raise BrokenPipeError("archive consumer went away")
            try:
                self._queue.put(item, timeout=0.5)
                return
            except queue.Full:
                continue

    def fail(self, error: BaseException) -> None:
        """Abort the stream; the reader raises ``error`` (as BackupError)."""
        if not isinstance(error, BackupError):
            wrapped = BackupError(str(error))
            wrapped.__cause__ = error
            error = wrapped
        try:
            self._put(error)
        except BrokenPipeError:
            pass


class _PipeWriter(io.RawIOBase):
    def __init__(self, pipe: StreamPipe):
        super().__init__()
        self._pipe = pipe

    def writable(self) -> bool:
        return True

    def write(self, b) -> int:
        if self.closed:
            raise ValueError("write to closed pipe")
        data = bytes(b)
        if data:
            self._pipe._put(data)
        return len(data)

    def close(self) -> None:
        if not self.closed:
            try:
                self._pipe._put(_EOF)
            except BrokenPipeError:
                pass
        super().close()


class _PipeReader(io.RawIOBase):
    def __init__(self, pipe: StreamPipe):
        super().__init__()
        self._pipe = pipe
        self._pending = b""
        self._eof = False

    def readable(self) -> bool:
        return True

    def readinto(self, b) -> int:
        if not self._pending and not self._eof:
            item = self._pipe._queue.get()
            if item is _EOF:
                self._eof = True
            elif isinstance(item, BaseException):
                self._eof = True
                raise item
            else:
                self._pending = item
        if not self._pending:
            return 0
        n = min(len(b), len(self._pending))
        b[:n] = self._pending[:n]
        self._pending = self._pending[n:]
        return n

    def close(self) -> None:
        self._pipe._reader_closed.set()
        # Unblock a producer stuck on a full queue
        while True:
            try:
                self._pipe._queue.get_nowait()
            except queue.Empty:
                break
        super().close()
