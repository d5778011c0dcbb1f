"""Transfer lifecycle events and the sinks that deliver them.

The :class:`~sftpbridge.transfer.TransferManager` emits every event for a
transfer from that transfer's worker thread, in order, and the terminal
event (finished, cancelled or error) is always the last one.  Sinks deliver
synchronously on the emitting thread so that order is preserved; a front end
that needs events on another thread (e.g. a UI loop) should use
:class:`QueueSink` and poll it.
"""

from __future__ import annotations

import dataclasses
import logging
import queue
import threading
from enum import Enum
from typing import Callable, Iterator, Union

logger = logging.getLogger(__name__)


class TransferType(Enum):
    """Direction of a transfer, as it appears in event payloads."""

    UPLOAD = "upload"
    DOWNLOAD = "download"


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------


@dataclasses.dataclass(frozen=True)
class ProgressEvent:
    """Bytes moved so far for one transfer."""

    transfer_id: str
    connection_id: str
    path: str
    transferred: int
    total: int
    type: TransferType

    terminal = False

    @property
    def name(self) -> str:
        return f"{self.type.value}_progress"

    def to_dict(self) -> dict[str, object]:
        return {
            "connection_id": self.connection_id,
            "path": self.path,
            "transferred": self.transferred,
            "total": self.total,
            "type": self.type.value,
            "transfer_id": self.transfer_id,
        }


@dataclasses.dataclass(frozen=True)
class FinishedEvent:
    """The transfer completed and the destination was flushed."""

    transfer_id: str
    connection_id: str
    path: str
    type: TransferType

    name = "process_finished"
    terminal = True

    def to_dict(self) -> dict[str, object]:
        return {
            "connection_id": self.connection_id,
            "path": self.path,
            "type": self.type.value,
            "transfer_id": self.transfer_id,
        }


@dataclasses.dataclass(frozen=True)
class CancelledEvent:
    """The transfer stopped because cancellation was requested."""

    transfer_id: str
    type: TransferType

    name = "transfer_cancelled"
    terminal = True

    def to_dict(self) -> dict[str, object]:
        return {"transfer_id": self.transfer_id, "type": self.type.value}


@dataclasses.dataclass(frozen=True)
class ErrorEvent:
    """The transfer failed; *kind* is the error taxonomy tag (``"io"`` ...)."""

    transfer_id: str
    error: str
    kind: str
    type: TransferType

    name = "transfer_error"
    terminal = True

    def to_dict(self) -> dict[str, object]:
        return {
            "transfer_id": self.transfer_id,
            "error": self.error,
            "kind": self.kind,
            "type": self.type.value,
        }


TransferEvent = Union[ProgressEvent, FinishedEvent, CancelledEvent, ErrorEvent]
EventCallback = Callable[[TransferEvent], None]


# ---------------------------------------------------------------------------
# Sinks
# ---------------------------------------------------------------------------


class ProgressSink:
    """Destination for transfer events.

    Implementations must be safe to call from several worker threads at once.
    """

    def emit(self, event: TransferEvent) -> None:
        raise NotImplementedError


class NullSink(ProgressSink):
    """Discards everything."""

    def emit(self, event: TransferEvent) -> None:
        pass


class CallbackSink(ProgressSink):
    """Calls *callback* for every event on the emitting thread."""

    def __init__(self, callback: EventCallback) -> None:
        self._callback = callback

    def emit(self, event: TransferEvent) -> None:
        try:
            self._callback(event)
        except Exception:
            logger.exception("Exception in event callback for %s", event.name)


class QueueSink(ProgressSink):
    """Buffers events in a thread-safe queue for a polling consumer."""

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: queue.Queue[TransferEvent] = queue.Queue(maxsize=maxsize)

    def emit(self, event: TransferEvent) -> None:
        self._queue.put(event)

    def get(self, timeout: float | None = None) -> TransferEvent:
        """Block for the next event; raises ``queue.Empty`` on timeout."""
        return self._queue.get(timeout=timeout)

    def drain(self) -> Iterator[TransferEvent]:
        """Yield every event currently buffered without blocking."""
        while True:
            try:
                yield self._queue.get_nowait()
            except queue.Empty:
                return


class EventBus(ProgressSink):
    """Fans events out to subscribers.

    Subscribers are called in subscription order on the emitting thread.
    Register before starting a transfer, or its early events are missed.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[EventCallback, frozenset[str] | None]] = []
        self._lock = threading.Lock()

    def subscribe(self, callback: EventCallback, names: set[str] | None = None) -> Callable[[], None]:
        """Register *callback*, optionally only for the event *names* given.

        Returns a function that removes the subscription.
        """
        entry = (callback, frozenset(names) if names else None)
        with self._lock:
            self._subscribers.append(entry)

        def unsubscribe() -> None:
            with self._lock:
                if entry in self._subscribers:
                    self._subscribers.remove(entry)

        return unsubscribe

    def emit(self, event: TransferEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback, names in subscribers:
            if names is not None and event.name not in names:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Exception in subscriber for %s", event.name)
