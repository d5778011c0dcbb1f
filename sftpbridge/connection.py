"""SSH/SFTP session handling for sftpbridge.

A :class:`RemoteSession` owns one authenticated paramiko connection and the
SFTP channel opened on it.  The channel is not safe for concurrent use, so
every operation runs under the session's exclusive lock; long operations
(transfers) hold it for their whole duration via :meth:`RemoteSession.exclusive`.
"""

from __future__ import annotations

import errno
import logging
import socket
import stat
import threading
from contextlib import contextmanager
from enum import Enum, auto
from pathlib import Path
from typing import IO, TYPE_CHECKING, Iterator

import keyring
import keyring.errors
import paramiko

from sftpbridge.errors import (
    AuthError,
    ConnectError,
    IoError,
    NotFoundError,
    SftpBridgeError,
    UnknownHostError,
)
from sftpbridge.models import FileEntry, KeyCredential, PasswordCredential, RemoteEndpoint
from sftpbridge.utils.path_helpers import format_permissions, posix_join

if TYPE_CHECKING:
    from paramiko import SFTPAttributes

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "sftpbridge"
DEFAULT_KNOWN_HOSTS = Path.home() / ".ssh" / "known_hosts"
_KEEPALIVE_INTERVAL = 30  # seconds


# ---------------------------------------------------------------------------
# Host-key policy
# ---------------------------------------------------------------------------


class HostKeyPolicy(Enum):
    """Controls how unknown remote host keys are handled."""

    STRICT = "strict"
    AUTO_ADD = "auto"


class _CapturingPolicy(paramiko.MissingHostKeyPolicy):
    """Raises UnknownHostError with fingerprint info instead of silently rejecting."""

    def missing_host_key(
        self,
        client: paramiko.SSHClient,
        hostname: str,
        key: paramiko.PKey,
    ) -> None:
        raw = key.get_fingerprint()
        fingerprint = ":".join(f"{b:02x}" for b in raw)
        raise UnknownHostError(
            f"Host '{hostname}' is not in known_hosts.\n"
            f"Key type: {key.get_name()}\n"
            f"Fingerprint (MD5): {fingerprint}",
            hostname=hostname,
            key_type=key.get_name(),
            fingerprint=fingerprint,
            key=key,
        )


def _close_client_safely(client: paramiko.SSHClient) -> None:
    """Close *client*, logging rather than raising on socket teardown noise."""
    try:
        client.close()
    except Exception:
        logger.debug("Ignoring error while closing SSH client", exc_info=True)


def accept_host_key(hostname: str, key: paramiko.PKey, known_hosts_path: Path | None = None) -> None:
    """Append *key* for *hostname* to the known_hosts file and save.

    Creates the file and its parent directory if they do not exist.
    """
    path = known_hosts_path or DEFAULT_KNOWN_HOSTS
    path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)

    host_keys = paramiko.HostKeys(str(path)) if path.exists() else paramiko.HostKeys()
    host_keys.add(hostname, key.get_name(), key)
    host_keys.save(str(path))
    logger.info("Saved host key for %s to %s", hostname, path)


# ---------------------------------------------------------------------------
# Credential helpers
# ---------------------------------------------------------------------------


def _load_private_key(credential: KeyCredential) -> paramiko.PKey:
    """Read and decrypt the private key named by *credential*.

    Raises:
        AuthError: The file is missing or unreadable, the passphrase is
            wrong or absent, or the key type is unsupported.
    """
    try:
        return paramiko.PKey.from_path(credential.key_path, credential.passphrase)
    except (OSError, ValueError, TypeError, paramiko.SSHException, paramiko.UnknownKeyType) as exc:
        raise AuthError(f"Cannot load private key: {exc}", path=credential.key_path) from exc


def _keyring_account(username: str, host: str) -> str:
    return f"{username}@{host}"


def store_password(username: str, host: str, password: str) -> None:
    """Store *password* in the OS keyring for ``username@host``."""
    keyring.set_password(KEYRING_SERVICE, _keyring_account(username, host), password)
    logger.debug("Password stored in keyring for %s", _keyring_account(username, host))


def load_password(username: str, host: str) -> str | None:
    """Return the stored password for ``username@host``, or None."""
    return keyring.get_password(KEYRING_SERVICE, _keyring_account(username, host))


def delete_password(username: str, host: str) -> None:
    """Remove the stored password for ``username@host`` from the OS keyring."""
    try:
        keyring.delete_password(KEYRING_SERVICE, _keyring_account(username, host))
    except keyring.errors.PasswordDeleteError:
        logger.debug("No stored password for %s", _keyring_account(username, host))
        return
    logger.debug("Password deleted from keyring for %s", _keyring_account(username, host))


# ---------------------------------------------------------------------------
# Listing order
# ---------------------------------------------------------------------------


def listing_sort_key(entry: FileEntry) -> tuple[int, int, str]:
    """``..`` first, then directories, then files; case-insensitive by name."""
    return (
        0 if entry.name == ".." else 1,
        0 if entry.is_dir else 1,
        entry.name.lower(),
    )


def is_listed(name: str) -> bool:
    """Hidden entries are skipped, except the parent link."""
    return name == ".." or not name.startswith(".")


# ---------------------------------------------------------------------------
# RemoteSession
# ---------------------------------------------------------------------------


class ConnectionState(Enum):
    """States for a session's lifetime."""

    CONNECTED = auto()
    CLOSED = auto()


class RemoteSession:
    """One authenticated SSH connection plus its SFTP channel.

    Thread-safety:
    - ``_lock`` is re-entrant and exclusive: one thread at a time may use the
      channel.  Public operations acquire it for their duration.
    - :meth:`exclusive` lets a caller keep it across several operations.
    """

    def __init__(
        self,
        session_id: str,
        endpoint: RemoteEndpoint,
        client: paramiko.SSHClient,
        sftp: paramiko.SFTPClient,
    ) -> None:
        self.session_id = session_id
        self.endpoint = endpoint
        self._client = client
        self._sftp = sftp
        self._state = ConnectionState.CONNECTED
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"RemoteSession(id={self.session_id!r}, endpoint={self.endpoint.label!r}, state={self._state.name})"

    # ------------------------------------------------------------------
    # Connect / close
    # ------------------------------------------------------------------

    @classmethod
    def open(
        cls,
        session_id: str,
        endpoint: RemoteEndpoint,
        *,
        timeout: float = 15.0,
        keepalive_interval: int = _KEEPALIVE_INTERVAL,
        host_key_policy: HostKeyPolicy = HostKeyPolicy.STRICT,
        known_hosts_path: Path | None = None,
    ) -> RemoteSession:
        """Connect, authenticate and open the SFTP channel.

        Raises:
            AuthError: No credential supplied, or the server rejected it.
            UnknownHostError: Host key unknown or mismatched.
            ConnectError: Unreachable host, handshake or channel failure.
        """
        credential = endpoint.credential
        if credential is None:
            raise AuthError("No authentication method provided")
        pkey = _load_private_key(credential) if isinstance(credential, KeyCredential) else None

        logger.info("Connecting to %s", endpoint.label)

        client = paramiko.SSHClient()
        known_hosts = known_hosts_path or DEFAULT_KNOWN_HOSTS
        if known_hosts.exists():
            client.load_host_keys(str(known_hosts))

        if host_key_policy is HostKeyPolicy.AUTO_ADD:
            logger.warning("AUTO_ADD host key policy accepts any host key for %s", endpoint.host)
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            client.set_missing_host_key_policy(_CapturingPolicy())

        connect_kwargs: dict = {
            "hostname": endpoint.host,
            "port": endpoint.port,
            "username": endpoint.username,
            "timeout": timeout,
            "banner_timeout": timeout,
            "auth_timeout": timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if isinstance(credential, KeyCredential):
            connect_kwargs["pkey"] = pkey
        elif isinstance(credential, PasswordCredential):
            connect_kwargs["password"] = credential.password
        else:
            raise AuthError(f"Unsupported credential type: {type(credential).__name__}")

        try:
            client.connect(**connect_kwargs)
        except UnknownHostError:
            _close_client_safely(client)
            raise
        except paramiko.BadHostKeyException as exc:
            _close_client_safely(client)
            raise UnknownHostError(
                f"Host key mismatch for {endpoint.host}, check known_hosts",
                hostname=endpoint.host,
            ) from exc
        except paramiko.AuthenticationException as exc:
            _close_client_safely(client)
            raise AuthError(f"Authentication failed for {endpoint.label}: {exc}") from exc
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            _close_client_safely(client)
            raise ConnectError(f"Failed to connect to {endpoint.label}: {exc}") from exc

        transport = client.get_transport()
        if transport is None or not transport.is_authenticated():
            _close_client_safely(client)
            raise AuthError(f"Authentication failed for {endpoint.label}")
        transport.set_keepalive(keepalive_interval)

        try:
            sftp = client.open_sftp()
        except (paramiko.SSHException, OSError) as exc:
            _close_client_safely(client)
            raise ConnectError(f"Failed to create SFTP session: {exc}") from exc

        logger.info("Connected to %s (session %s)", endpoint.label, session_id)
        return cls(session_id, endpoint, client, sftp)

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_active(self) -> bool:
        """True while the session is open and its transport is alive."""
        if self._state is not ConnectionState.CONNECTED:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def close(self) -> None:
        """Close the SFTP channel and the SSH connection.

        Waits for any operation holding the session lock to finish first.
        Closing twice is a no-op.
        """
        with self._lock:
            if self._state is ConnectionState.CLOSED:
                return
            self._state = ConnectionState.CLOSED
            try:
                self._sftp.close()
            except Exception:
                logger.debug("Ignoring error while closing SFTP channel", exc_info=True)
            _close_client_safely(self._client)
        logger.info("Disconnected from %s (session %s)", self.endpoint.label, self.session_id)

    # ------------------------------------------------------------------
    # Locking and error translation
    # ------------------------------------------------------------------

    @contextmanager
    def exclusive(self) -> Iterator[RemoteSession]:
        """Hold the session lock across several operations."""
        with self._lock:
            self._ensure_open()
            yield self

    def _ensure_open(self) -> None:
        if self._state is not ConnectionState.CONNECTED:
            raise NotFoundError(f"Session {self.session_id} is closed")

    @contextmanager
    def _errors(self, path: str) -> Iterator[None]:
        """Map paramiko/OS exceptions to sftpbridge errors."""
        try:
            yield
        except SftpBridgeError:
            raise
        except OSError as exc:
            reason = exc.strerror or str(exc) or errno.errorcode.get(exc.errno or 0, "I/O error")
            raise IoError(reason, path=path) from exc
        except paramiko.SSHException as exc:
            raise IoError(str(exc), path=path) from exc

    # ------------------------------------------------------------------
    # SFTP operations
    # ------------------------------------------------------------------

    def list_directory(self, path: str) -> list[FileEntry]:
        """List *path*, hidden entries excluded, in presentation order.

        Raises:
            NotFoundError: If the session is closed.
            IoError: If the directory cannot be read.
        """
        with self._lock, self._errors(path):
            self._ensure_open()
            attrs: list[SFTPAttributes] = self._sftp.listdir_attr(path)

        entries = [self._to_entry(path, attr) for attr in attrs if is_listed(attr.filename)]
        entries.sort(key=listing_sort_key)
        logger.debug("Listed %d entries in %s", len(entries), path)
        return entries

    def stat(self, path: str) -> FileEntry:
        """Return metadata for *path*."""
        with self._lock, self._errors(path):
            self._ensure_open()
            attr = self._sftp.stat(path)
        name = path.rstrip("/").rsplit("/", 1)[-1] or "/"
        return self._to_entry(path, attr, name=name, full_path=path)

    def create_directory(self, path: str) -> None:
        with self._lock, self._errors(path):
            self._ensure_open()
            self._sftp.mkdir(path, 0o755)
        logger.info("Created directory %s", path)

    def delete(self, path: str, is_dir: bool) -> None:
        """Remove a file, or an (empty) directory when *is_dir* is set."""
        with self._lock, self._errors(path):
            self._ensure_open()
            if is_dir:
                self._sftp.rmdir(path)
            else:
                self._sftp.remove(path)
        logger.info("Deleted %s %s", "directory" if is_dir else "file", path)

    def rename(self, old_path: str, new_path: str) -> None:
        with self._lock, self._errors(old_path):
            self._ensure_open()
            self._sftp.rename(old_path, new_path)
        logger.info("Renamed %s → %s", old_path, new_path)

    def open_read(self, path: str) -> tuple[IO[bytes], int]:
        """Open *path* for reading; return the handle and its size in bytes.

        The caller owns the handle and should hold :meth:`exclusive` while
        using it.
        """
        with self._lock, self._errors(path):
            self._ensure_open()
            fh = self._sftp.open(path, "rb")
            try:
                size = fh.stat().st_size or 0
            except Exception:
                fh.close()
                raise
            if size > 0:
                fh.prefetch(size)
        return fh, size

    def open_write(self, path: str) -> IO[bytes]:
        """Create or truncate *path* for writing."""
        with self._lock, self._errors(path):
            self._ensure_open()
            fh = self._sftp.open(path, "wb")
            fh.set_pipelined(True)
        return fh

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _to_entry(
        directory: str,
        attr: SFTPAttributes,
        *,
        name: str | None = None,
        full_path: str | None = None,
    ) -> FileEntry:
        name = name if name is not None else attr.filename
        mode = attr.st_mode or 0
        return FileEntry(
            name=name,
            path=full_path if full_path is not None else posix_join(directory, name),
            is_dir=stat.S_ISDIR(mode),
            size=int(attr.st_size or 0),
            modified=int(attr.st_mtime or 0),
            permissions=format_permissions(mode),
        )
