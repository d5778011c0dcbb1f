"""Background upload/download engine for sftpbridge.

Handles transfers between the local filesystem and a registered session:
- One worker task per transfer, bounded by a thread pool (admission queue)
- Fixed 8 KiB chunks, cancellation polled once per chunk via threading.Event
- Progress and terminal events through a :class:`~sftpbridge.events.ProgressSink`
- The session lock is held for the whole stream, so other operations on the
  same session wait until the transfer ends
"""

from __future__ import annotations

import logging
import os
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import IO, TYPE_CHECKING

from sftpbridge.errors import CancelledError, IoError, NotFoundError, SftpBridgeError
from sftpbridge.events import (
    CancelledEvent,
    ErrorEvent,
    FinishedEvent,
    NullSink,
    ProgressEvent,
    ProgressSink,
    TransferType,
)
from sftpbridge.utils.path_helpers import normalize_local_path, validate_remote_path

if TYPE_CHECKING:
    from sftpbridge.connection import RemoteSession
    from sftpbridge.registry import SessionRegistry

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8 * 1024
DEFAULT_MAX_WORKERS = 4


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TransferStatus(Enum):
    """Lifecycle state of a TransferItem."""

    PENDING = auto()
    RUNNING = auto()
    COMPLETED = auto()
    CANCELLED = auto()
    FAILED = auto()

    @property
    def is_terminal(self) -> bool:
        return self in (TransferStatus.COMPLETED, TransferStatus.CANCELLED, TransferStatus.FAILED)


# ---------------------------------------------------------------------------
# TransferItem
# ---------------------------------------------------------------------------


@dataclass
class TransferItem:
    """Bookkeeping for one upload or download."""

    session_id: str
    direction: TransferType
    local_path: str
    remote_path: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    total_bytes: int = 0
    bytes_transferred: int = 0
    status: TransferStatus = TransferStatus.PENDING
    error: str | None = None
    start_time: float | None = None
    end_time: float | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancel_requested(self) -> bool:
        return self.cancel_event.is_set()

    @property
    def progress_fraction(self) -> float:
        """Fraction of the file transferred (0.0 – 1.0)."""
        if self.total_bytes <= 0:
            return 1.0 if self.status is TransferStatus.COMPLETED else 0.0
        return min(1.0, self.bytes_transferred / self.total_bytes)

    @property
    def speed_mbps(self) -> float:
        """Current transfer speed in MB/s, or 0 if not yet started."""
        if self.start_time is None or self.bytes_transferred == 0:
            return 0.0
        elapsed = (self.end_time or time.monotonic()) - self.start_time
        if elapsed <= 0:
            return 0.0
        return (self.bytes_transferred / elapsed) / (1024 * 1024)

    @property
    def eta_seconds(self) -> float | None:
        """Estimated seconds remaining, or None if speed is unknown."""
        speed = self.speed_mbps
        if speed <= 0 or self.total_bytes <= 0:
            return None
        remaining_bytes = self.total_bytes - self.bytes_transferred
        return remaining_bytes / (speed * 1024 * 1024)


# ---------------------------------------------------------------------------
# TransferManager
# ---------------------------------------------------------------------------


class TransferManager:
    """Starts, tracks and cancels background transfers.

    The transfer table (id → :class:`TransferItem`) is guarded by ``_lock``
    and touched only by start, cancel and cleanup.  The streaming loop reads
    nothing but the item's own cancel event.

    Args:
        registry: Where session ids are resolved.
        sink: Receives every transfer event.
        max_workers: Transfers allowed to run at once; the rest wait as
            ``PENDING`` in submission order.
        chunk_size: Bytes per read/write call.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        sink: ProgressSink | None = None,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
        chunk_size: int = CHUNK_SIZE,
    ) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._registry = registry
        self._sink = sink or NullSink()
        self.max_workers = max_workers
        self._chunk_size = chunk_size
        self._transfers: dict[str, TransferItem] = {}
        self._futures: set[Future] = set()
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="transfer")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start_upload(self, session_id: str, local_path: str, remote_path: str) -> str:
        """Queue an upload of *local_path* to *remote_path*; return its id.

        Raises:
            NotFoundError: If *session_id* is not registered.
        """
        return self._start(session_id, TransferType.UPLOAD, local_path, remote_path)

    def start_download(self, session_id: str, remote_path: str, local_path: str) -> str:
        """Queue a download of *remote_path* to *local_path*; return its id.

        Raises:
            NotFoundError: If *session_id* is not registered.
        """
        return self._start(session_id, TransferType.DOWNLOAD, local_path, remote_path)

    def cancel(self, transfer_id: str) -> None:
        """Request cancellation; the worker stops before its next chunk.

        Raises:
            NotFoundError: If the id is unknown or the transfer already ended.
        """
        with self._lock:
            item = self._transfers.get(transfer_id)
        if item is None:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        item.cancel_event.set()
        logger.info("Cancellation requested for transfer %s", transfer_id)

    def get(self, transfer_id: str) -> TransferItem:
        """Return the live item for a pending or running transfer."""
        with self._lock:
            item = self._transfers.get(transfer_id)
        if item is None:
            raise NotFoundError(f"Transfer {transfer_id} not found")
        return item

    def active(self) -> list[TransferItem]:
        """All transfers not yet terminal."""
        with self._lock:
            return list(self._transfers.values())

    def wait(self, timeout: float | None = None) -> bool:
        """Block until every submitted transfer is terminal.

        Returns False if *timeout* expired first.
        """
        with self._lock:
            futures = set(self._futures)
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def shutdown(self, cancel: bool = True, wait: bool = True) -> None:
        """Stop accepting transfers, optionally cancelling those in flight."""
        if cancel:
            for item in self.active():
                item.cancel_event.set()
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _start(self, session_id: str, direction: TransferType, local_path: str, remote_path: str) -> str:
        session = self._registry.get(session_id)
        item = TransferItem(
            session_id=session_id,
            direction=direction,
            local_path=str(normalize_local_path(local_path)),
            remote_path=remote_path,
        )
        with self._lock:
            self._transfers[item.id] = item
            try:
                future = self._executor.submit(self._run, item, session)
            except RuntimeError:
                del self._transfers[item.id]
                raise
            self._futures.add(future)
        future.add_done_callback(self._forget_future)
        logger.info(
            "Queued %s %s: %s ↔ %s",
            direction.value,
            item.id,
            item.local_path,
            remote_path,
        )
        return item.id

    def _forget_future(self, future: Future) -> None:
        with self._lock:
            self._futures.discard(future)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _run(self, item: TransferItem, session: RemoteSession) -> None:
        """Drive *item* to a terminal state and emit the matching event."""
        try:
            if item.cancel_requested:
                raise CancelledError(f"Transfer {item.id} cancelled")
            with session.exclusive():
                if item.cancel_requested:
                    raise CancelledError(f"Transfer {item.id} cancelled")
                item.status = TransferStatus.RUNNING
                item.start_time = time.monotonic()
                if item.direction is TransferType.UPLOAD:
                    self._upload(item, session)
                else:
                    self._download(item, session)
        except CancelledError:
            self._finish(item, TransferStatus.CANCELLED)
            logger.info("Transfer %s cancelled after %d bytes", item.id, item.bytes_transferred)
            self._emit(CancelledEvent(transfer_id=item.id, type=item.direction))
        except Exception as exc:
            error = exc if isinstance(exc, SftpBridgeError) else IoError(str(exc))
            self._finish(item, TransferStatus.FAILED, error=str(error))
            logger.error("Transfer %s failed: %s", item.id, error)
            self._emit(
                ErrorEvent(transfer_id=item.id, error=str(error), kind=error.kind, type=item.direction)
            )
        else:
            self._finish(item, TransferStatus.COMPLETED)
            logger.info(
                "%s complete: %s (%d bytes)",
                item.direction.value.capitalize(),
                item.remote_path,
                item.bytes_transferred,
            )
            self._emit(
                FinishedEvent(
                    transfer_id=item.id,
                    connection_id=item.session_id,
                    path=item.remote_path,
                    type=item.direction,
                )
            )

    def _finish(self, item: TransferItem, status: TransferStatus, error: str | None = None) -> None:
        """Record the terminal state and drop the table entry.

        Runs before the terminal event is emitted, so a listener reacting to
        that event already gets NotFoundError from :meth:`cancel`.
        """
        item.status = status
        item.error = error
        item.end_time = time.monotonic()
        with self._lock:
            self._transfers.pop(item.id, None)

    def _emit(self, event) -> None:
        try:
            self._sink.emit(event)
        except Exception:
            logger.exception("Exception in progress sink for %s", event.name)

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def _upload(self, item: TransferItem, session: RemoteSession) -> None:
        """Stream a local file to the remote host.

        A cancelled upload leaves the partially written remote file in place.
        """
        if not validate_remote_path(item.remote_path):
            raise IoError("Invalid remote destination path", path=item.remote_path)

        try:
            local_fh = open(item.local_path, "rb")
        except OSError as exc:
            raise IoError(f"Failed to open local file: {exc.strerror or exc}", path=item.local_path) from exc

        with local_fh:
            try:
                item.total_bytes = os.fstat(local_fh.fileno()).st_size
            except OSError as exc:
                raise IoError(f"Failed to stat local file: {exc}", path=item.local_path) from exc

            with session.open_write(item.remote_path) as remote_fh:
                self._stream_with_progress(local_fh, remote_fh, item)
                try:
                    remote_fh.flush()
                except OSError as exc:
                    raise IoError(f"Failed to flush remote file: {exc}", path=item.remote_path) from exc

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def _download(self, item: TransferItem, session: RemoteSession) -> None:
        """Stream a remote file to the local filesystem.

        Any non-successful outcome removes the partial local file.
        """
        remote_fh, item.total_bytes = session.open_read(item.remote_path)
        with remote_fh:
            dest = Path(item.local_path)
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                local_fh = open(dest, "wb")
            except OSError as exc:
                raise IoError(f"Failed to create local file: {exc.strerror or exc}", path=item.local_path) from exc

            try:
                with local_fh:
                    self._stream_with_progress(remote_fh, local_fh, item)
                    local_fh.flush()
                    os.fsync(local_fh.fileno())
            except BaseException:
                self._remove_partial(item.local_path)
                raise

    @staticmethod
    def _remove_partial(local_path: str) -> None:
        try:
            os.remove(local_path)
            logger.debug("Removed partial download %s", local_path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Could not remove partial download %s: %s", local_path, exc)

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    def _stream_with_progress(self, src: IO[bytes], dst: IO[bytes], item: TransferItem) -> None:
        """Copy *src* to *dst* chunk by chunk, emitting a progress event per chunk.

        The cancel flag is checked only when another chunk is about to be
        written: once the final chunk is out, end-of-file wins and the
        transfer completes even if cancellation arrives afterwards.
        """
        read_path, write_path = (
            (item.local_path, item.remote_path)
            if item.direction is TransferType.UPLOAD
            else (item.remote_path, item.local_path)
        )
        chunk = self._read(src, read_path)
        while chunk:
            if item.cancel_requested:
                raise CancelledError(f"Transfer {item.id} cancelled")
            try:
                dst.write(chunk)
            except (OSError, EOFError) as exc:
                raise IoError(f"Write error: {exc}", path=write_path) from exc
            item.bytes_transferred += len(chunk)
            self._emit(
                ProgressEvent(
                    transfer_id=item.id,
                    connection_id=item.session_id,
                    path=item.remote_path,
                    transferred=item.bytes_transferred,
                    total=item.total_bytes,
                    type=item.direction,
                )
            )
            chunk = self._read(src, read_path)

    def _read(self, src: IO[bytes], path: str) -> bytes:
        try:
            return src.read(self._chunk_size)
        except (OSError, EOFError) as exc:
            raise IoError(f"Read error: {exc}", path=path) from exc
