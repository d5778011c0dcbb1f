"""SessionRegistry: session-id → live :class:`RemoteSession` bookkeeping."""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from sftpbridge.connection import HostKeyPolicy, RemoteSession
from sftpbridge.errors import NotFoundError

if TYPE_CHECKING:
    from types import TracebackType

    from sftpbridge.config import ConfigManager
    from sftpbridge.models import RemoteEndpoint

logger = logging.getLogger(__name__)

SessionFactory = Callable[[str, "RemoteEndpoint"], RemoteSession]


class SessionRegistry:
    """Creates, looks up and destroys remote sessions.

    ``_lock`` guards only the id → session map.  It is never held while
    connecting, closing or operating on a session, so a slow host cannot
    stall lookups of other sessions.

    Args:
        timeout: Connect/banner/auth timeout in seconds.
        keepalive_interval: SSH keepalive interval in seconds.
        host_key_policy: How to treat hosts missing from known_hosts.
        known_hosts_path: Alternative known_hosts file.
        session_factory: Replaces :meth:`RemoteSession.open`; receives the
            new session id and the endpoint.
    """

    def __init__(
        self,
        *,
        timeout: float = 15.0,
        keepalive_interval: int = 30,
        host_key_policy: HostKeyPolicy = HostKeyPolicy.STRICT,
        known_hosts_path: Path | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._timeout = timeout
        self._keepalive_interval = keepalive_interval
        self._host_key_policy = host_key_policy
        self._known_hosts_path = known_hosts_path
        self._session_factory = session_factory or self._open_session
        self._sessions: dict[str, RemoteSession] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: ConfigManager, **kwargs) -> SessionRegistry:
        """Build a registry from the connection settings in *config*."""
        known_hosts = config.get("known_hosts_path")
        return cls(
            timeout=float(config.get("ssh_timeout", 15)),
            keepalive_interval=int(config.get("keepalive_interval", 30)),
            host_key_policy=HostKeyPolicy(config.get("host_key_policy", "strict")),
            known_hosts_path=Path(known_hosts).expanduser() if known_hosts else None,
            **kwargs,
        )

    def __repr__(self) -> str:
        return f"SessionRegistry(sessions={len(self)})"

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def _open_session(self, session_id: str, endpoint: RemoteEndpoint) -> RemoteSession:
        return RemoteSession.open(
            session_id,
            endpoint,
            timeout=self._timeout,
            keepalive_interval=self._keepalive_interval,
            host_key_policy=self._host_key_policy,
            known_hosts_path=self._known_hosts_path,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def connect(self, endpoint: RemoteEndpoint) -> str:
        """Authenticate to *endpoint* and register the session.

        Returns:
            A session id never issued before by this registry.

        Raises:
            ConnectError: Unreachable host or handshake failure.
            AuthError: Missing or rejected credential.
        """
        session_id = str(uuid.uuid4())
        session = self._session_factory(session_id, endpoint)
        with self._lock:
            self._sessions[session_id] = session
        logger.info("Registered session %s for %s", session_id, endpoint.label)
        return session_id

    def get(self, session_id: str) -> RemoteSession:
        """Return the live session for *session_id*.

        Raises:
            NotFoundError: If the id is unknown or already disconnected.
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Connection {session_id} not found")
        return session

    def disconnect(self, session_id: str) -> None:
        """Unregister and close the session.

        The id becomes invalid immediately; closing waits for any operation
        currently holding the session lock (e.g. a running transfer).

        Raises:
            NotFoundError: If the id is unknown or already disconnected.
        """
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            raise NotFoundError(f"Connection {session_id} not found")
        session.close()
        logger.info("Session %s released", session_id)

    def list_sessions(self) -> list[str]:
        """Ids of all registered sessions."""
        with self._lock:
            return list(self._sessions)

    def close_all(self) -> None:
        """Disconnect every registered session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()

    def __enter__(self) -> SessionRegistry:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close_all()
