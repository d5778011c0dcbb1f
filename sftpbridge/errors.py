"""Error taxonomy for sftpbridge.

Every failure that crosses the public API is one of the classes below, so
callers can branch on the exception type (or its ``kind``) instead of
parsing messages.  Transfer outcomes never raise: they are reported through
the event stream with the same ``kind`` strings.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    import paramiko


class SftpBridgeError(Exception):
    """Base class for all sftpbridge errors.

    Args:
        message: Human-readable description.
        path: Local or remote path involved, if any.
    """

    kind = "error"

    def __init__(self, message: str = "", *, path: str | None = None) -> None:
        self.path = path
        super().__init__(message)

    def __str__(self) -> str:
        base = super().__str__()
        if self.path is not None:
            return f"{base} | path={self.path!r}"
        return base

    def __repr__(self) -> str:
        args = [repr(super().__str__())]
        if self.path is not None:
            args.append(f"path={self.path!r}")
        return f"{type(self).__name__}({', '.join(args)})"


class ConnectError(SftpBridgeError):
    """Host unreachable, handshake failed or the SFTP channel could not open."""

    kind = "connect"


class UnknownHostError(ConnectError):
    """Raised when the remote host key is not in known_hosts.

    Carries the fingerprint and key so the caller can prompt the user and
    optionally save it via :func:`sftpbridge.connection.accept_host_key`.
    """

    def __init__(
        self,
        message: str,
        hostname: str = "",
        key_type: str = "",
        fingerprint: str = "",
        key: paramiko.PKey | None = None,
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        self.key_type = key_type
        self.fingerprint = fingerprint
        self.key = key


class AuthError(SftpBridgeError):
    """No credential supplied, or the server rejected it."""

    kind = "auth"


class NotFoundError(SftpBridgeError):
    """Unknown (or already released) session id or transfer id."""

    kind = "not_found"


class IoError(SftpBridgeError):
    """Local or remote read/write/stat failure."""

    kind = "io"


class CancelledError(SftpBridgeError):
    """A transfer was aborted on request."""

    kind = "cancelled"
