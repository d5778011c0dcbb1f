"""Immutable value objects shared across sftpbridge."""

from __future__ import annotations

import dataclasses
from typing import Union


@dataclasses.dataclass(frozen=True)
class PasswordCredential:
    """Password authentication."""

    password: str

    def __repr__(self) -> str:
        return "PasswordCredential(password='***')"


@dataclasses.dataclass(frozen=True)
class KeyCredential:
    """Private-key authentication.

    :param key_path: Path to the private key file.
    :param passphrase: Passphrase protecting the key, if any.
    """

    key_path: str
    passphrase: str | None = None

    def __repr__(self) -> str:
        masked = "'***'" if self.passphrase else "None"
        return f"KeyCredential(key_path={self.key_path!r}, passphrase={masked})"


Credential = Union[PasswordCredential, KeyCredential]


@dataclasses.dataclass(frozen=True)
class RemoteEndpoint:
    """Where and as whom to connect.

    A credential is modelled as a single field so that exactly one
    authentication method can be supplied.  ``None`` is accepted here and
    rejected at connect time with :class:`~sftpbridge.errors.AuthError`.
    """

    host: str
    username: str
    port: int = 22
    credential: Credential | None = None

    def __post_init__(self) -> None:
        if not self.host or not self.host.strip():
            raise ValueError("host must be a non-empty string")
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")

    @property
    def label(self) -> str:
        """``user@host:port`` for log messages."""
        return f"{self.username}@{self.host}:{self.port}"


@dataclasses.dataclass(frozen=True)
class FileEntry:
    """One row of a remote directory listing.

    :param name: Final path component.
    :param path: Full POSIX path on the remote host.
    :param is_dir: True for directories.
    :param size: Size in bytes (0 when the server does not report it).
    :param modified: Modification time, epoch seconds.
    :param permissions: ``ls -l`` style mode string, e.g. ``drwxr-xr-x``.
    """

    name: str
    path: str
    is_dir: bool
    size: int
    modified: int
    permissions: str

    def to_dict(self) -> dict[str, object]:
        return dataclasses.asdict(self)
