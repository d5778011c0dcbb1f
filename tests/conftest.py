"""Shared fixtures: a directory-backed SFTP stand-in and event recorders."""

from __future__ import annotations

import os
import threading
from pathlib import Path
from unittest.mock import MagicMock

import paramiko
import pytest

from sftpbridge.connection import RemoteSession
from sftpbridge.events import ProgressSink
from sftpbridge.models import PasswordCredential, RemoteEndpoint
from sftpbridge.registry import SessionRegistry


# ---------------------------------------------------------------------------
# Fake remote side
# ---------------------------------------------------------------------------


class FakeRemoteFile:
    """File handle with the paramiko.SFTPFile methods the engine uses."""

    def __init__(self, path: Path, mode: str) -> None:
        self._fh = open(path, mode)
        self.pipelined = False
        self.prefetched: int | None = None

    def read(self, size: int = -1) -> bytes:
        return self._fh.read(size)

    def write(self, data: bytes) -> None:
        self._fh.write(data)

    def flush(self) -> None:
        self._fh.flush()

    def close(self) -> None:
        self._fh.close()

    def stat(self) -> paramiko.SFTPAttributes:
        return paramiko.SFTPAttributes.from_stat(os.fstat(self._fh.fileno()))

    def prefetch(self, file_size: int | None = None) -> None:
        self.prefetched = file_size

    def set_pipelined(self, pipelined: bool = True) -> None:
        self.pipelined = pipelined

    def __enter__(self) -> FakeRemoteFile:
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class FakeSFTP:
    """Maps remote POSIX paths onto a local directory tree."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.closed = False

    def local(self, remote_path: str) -> Path:
        return self.root / remote_path.lstrip("/")

    def listdir_attr(self, path: str = ".") -> list[paramiko.SFTPAttributes]:
        base = self.local(path)
        return [
            paramiko.SFTPAttributes.from_stat(os.lstat(base / name), name)
            for name in os.listdir(base)
        ]

    def stat(self, path: str) -> paramiko.SFTPAttributes:
        return paramiko.SFTPAttributes.from_stat(os.stat(self.local(path)))

    def open(self, path: str, mode: str = "r") -> FakeRemoteFile:
        return FakeRemoteFile(self.local(path), mode)

    def mkdir(self, path: str, mode: int = 0o777) -> None:
        os.mkdir(self.local(path), mode)

    def rmdir(self, path: str) -> None:
        os.rmdir(self.local(path))

    def remove(self, path: str) -> None:
        os.remove(self.local(path))

    def rename(self, oldpath: str, newpath: str) -> None:
        os.rename(self.local(oldpath), self.local(newpath))

    def close(self) -> None:
        self.closed = True


# ---------------------------------------------------------------------------
# Event recording
# ---------------------------------------------------------------------------


class RecordingSink(ProgressSink):
    """Records every event; lets tests block until a transfer is terminal.

    *hook* runs on the worker thread for each event before it is recorded.
    """

    def __init__(self, hook=None) -> None:
        self.events: list = []
        self.hook = hook
        self._lock = threading.Lock()
        self._terminal: dict[str, threading.Event] = {}

    def _terminal_event(self, transfer_id: str) -> threading.Event:
        with self._lock:
            return self._terminal.setdefault(transfer_id, threading.Event())

    def emit(self, event) -> None:
        if self.hook is not None:
            self.hook(event)
        with self._lock:
            self.events.append(event)
        if event.terminal:
            self._terminal_event(event.transfer_id).set()

    def wait_terminal(self, transfer_id: str, timeout: float = 10.0) -> bool:
        return self._terminal_event(transfer_id).wait(timeout)

    def for_transfer(self, transfer_id: str) -> list:
        with self._lock:
            return [e for e in self.events if e.transfer_id == transfer_id]

    def names(self, transfer_id: str) -> list[str]:
        return [e.name for e in self.for_transfer(transfer_id)]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def endpoint() -> RemoteEndpoint:
    return RemoteEndpoint(host="sftp.example.com", username="foo", port=2222, credential=PasswordCredential("pass"))


@pytest.fixture()
def remote_root(tmp_path: Path) -> Path:
    root = tmp_path / "remote"
    root.mkdir()
    return root


@pytest.fixture()
def local_dir(tmp_path: Path) -> Path:
    local = tmp_path / "local"
    local.mkdir()
    return local


@pytest.fixture()
def fake_sftp(remote_root: Path) -> FakeSFTP:
    return FakeSFTP(remote_root)


@pytest.fixture()
def registry(fake_sftp: FakeSFTP) -> SessionRegistry:
    """A registry whose sessions all talk to the same fake remote tree."""

    def factory(session_id: str, endpoint: RemoteEndpoint) -> RemoteSession:
        return RemoteSession(session_id, endpoint, MagicMock(), fake_sftp)

    reg = SessionRegistry(session_factory=factory)
    yield reg
    reg.close_all()


@pytest.fixture()
def session_id(registry: SessionRegistry, endpoint: RemoteEndpoint) -> str:
    return registry.connect(endpoint)
