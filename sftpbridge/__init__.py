"""sftpbridge: SFTP sessions with cancellable background transfers."""

from sftpbridge.bridge import Bridge
from sftpbridge.config import ConfigManager, endpoint_from_profile
from sftpbridge.connection import HostKeyPolicy, RemoteSession, accept_host_key
from sftpbridge.errors import (
    AuthError,
    CancelledError,
    ConnectError,
    IoError,
    NotFoundError,
    SftpBridgeError,
    UnknownHostError,
)
from sftpbridge.events import (
    CallbackSink,
    CancelledEvent,
    ErrorEvent,
    EventBus,
    FinishedEvent,
    NullSink,
    ProgressEvent,
    ProgressSink,
    QueueSink,
    TransferType,
)
from sftpbridge.models import FileEntry, KeyCredential, PasswordCredential, RemoteEndpoint
from sftpbridge.registry import SessionRegistry
from sftpbridge.transfer import CHUNK_SIZE, TransferItem, TransferManager, TransferStatus

__version__ = "0.1.0"

__all__ = [
    "Bridge",
    "SessionRegistry",
    "RemoteSession",
    "TransferManager",
    "TransferItem",
    "TransferStatus",
    "CHUNK_SIZE",
    "RemoteEndpoint",
    "PasswordCredential",
    "KeyCredential",
    "FileEntry",
    "HostKeyPolicy",
    "accept_host_key",
    "ConfigManager",
    "endpoint_from_profile",
    "ProgressSink",
    "NullSink",
    "CallbackSink",
    "QueueSink",
    "EventBus",
    "TransferType",
    "ProgressEvent",
    "FinishedEvent",
    "CancelledEvent",
    "ErrorEvent",
    "SftpBridgeError",
    "ConnectError",
    "UnknownHostError",
    "AuthError",
    "NotFoundError",
    "IoError",
    "CancelledError",
    "__version__",
]
