"""Bridge: the caller-facing surface, keyed by session and transfer ids."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from sftpbridge.events import EventBus
from sftpbridge.registry import SessionRegistry
from sftpbridge.transfer import DEFAULT_MAX_WORKERS, TransferManager

if TYPE_CHECKING:
    from types import TracebackType

    from sftpbridge.config import ConfigManager
    from sftpbridge.models import FileEntry, RemoteEndpoint

logger = logging.getLogger(__name__)


class Bridge:
    """Wires a :class:`SessionRegistry`, a :class:`TransferManager` and an
    :class:`EventBus` together.

    Directory operations run on the calling thread and block while another
    operation (including a transfer) holds the same session.  Transfers run
    in the background; their outcome is only visible through :attr:`events`,
    so subscribe before starting one.
    """

    def __init__(
        self,
        registry: SessionRegistry | None = None,
        *,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ) -> None:
        self.registry = registry or SessionRegistry()
        self.events = EventBus()
        self.transfers = TransferManager(self.registry, self.events, max_workers=max_workers)

    @classmethod
    def from_config(cls, config: ConfigManager) -> Bridge:
        return cls(
            SessionRegistry.from_config(config),
            max_workers=int(config.get("max_concurrent_transfers", DEFAULT_MAX_WORKERS)),
        )

    # Sessions

    def connect(self, endpoint: RemoteEndpoint) -> str:
        return self.registry.connect(endpoint)

    def disconnect(self, session_id: str) -> None:
        self.registry.disconnect(session_id)

    # Directory and metadata operations

    def list_directory(self, session_id: str, path: str) -> list[FileEntry]:
        return self.registry.get(session_id).list_directory(path)

    def create_directory(self, session_id: str, path: str) -> None:
        self.registry.get(session_id).create_directory(path)

    def delete(self, session_id: str, path: str, is_dir: bool) -> None:
        self.registry.get(session_id).delete(path, is_dir)

    def rename(self, session_id: str, old_path: str, new_path: str) -> None:
        self.registry.get(session_id).rename(old_path, new_path)

    # Transfers

    def start_upload(self, session_id: str, local_path: str, remote_path: str) -> str:
        return self.transfers.start_upload(session_id, local_path, remote_path)

    def start_download(self, session_id: str, remote_path: str, local_path: str) -> str:
        return self.transfers.start_download(session_id, remote_path, local_path)

    def cancel_transfer(self, transfer_id: str) -> None:
        self.transfers.cancel(transfer_id)

    # Lifecycle

    def close(self) -> None:
        """Cancel outstanding transfers, then disconnect every session."""
        self.transfers.shutdown(cancel=True, wait=True)
        self.registry.close_all()
        logger.debug("Bridge closed")

    def __enter__(self) -> Bridge:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
