"""Path normalisation, validation and display helpers."""

from __future__ import annotations

import logging
import os
import posixpath
import stat
from pathlib import Path, PurePosixPath

logger = logging.getLogger(__name__)


def posix_join(*parts: str) -> str:
    """Join path parts using POSIX (forward-slash) rules.

    Suitable for constructing remote paths regardless of the local OS.
    """
    return posixpath.join(*parts)


def resolve_remote_path(path: str, current_path: str) -> str:
    """Resolve *path* against the remote working directory *current_path*.

    Absolute paths are returned unchanged, ``.`` is the current directory,
    ``..`` its parent (never above ``/``) and anything else is appended.

    Example::

        >>> resolve_remote_path("..", "/home/foo")
        '/home'
        >>> resolve_remote_path("docs", "/home/foo/")
        '/home/foo/docs'
    """
    if path.startswith("/"):
        return path
    if path == ".":
        return current_path
    if path == "..":
        parent = current_path.rstrip("/").rsplit("/", 1)[0]
        return parent or "/"
    return f"{current_path.rstrip('/')}/{path}"


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB").

    Uses 1024-based units (KiB/MiB/GiB) but labels them KB/MB/GB for
    familiarity with everyday usage.
    """
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def format_permissions(mode: int | None) -> str:
    """Render *mode* the way ``ls -l`` does, e.g. ``drwxr-xr-x``.

    Missing modes (some servers omit them) render as ``----------``.
    """
    mode = mode or 0
    if stat.S_ISDIR(mode):
        kind = "d"
    elif stat.S_ISLNK(mode):
        kind = "l"
    else:
        kind = "-"

    chars = []
    for who, special, special_char in (
        ("USR", stat.S_ISUID, "s"),
        ("GRP", stat.S_ISGID, "s"),
        ("OTH", stat.S_ISVTX, "t"),
    ):
        r = getattr(stat, f"S_IR{who}")
        w = getattr(stat, f"S_IW{who}")
        x = getattr(stat, f"S_IX{who}")
        chars.append("r" if mode & r else "-")
        chars.append("w" if mode & w else "-")
        if mode & special:
            chars.append(special_char if mode & x else special_char.upper())
        else:
            chars.append("x" if mode & x else "-")
    return kind + "".join(chars)


def validate_remote_path(path: str) -> bool:
    """Return True if *path* is safe for SFTP operations.

    Rejects paths that contain null bytes or path-traversal sequences (``..``).
    """
    if not path:
        logger.warning("Remote path rejected: empty")
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected, contains null byte: %r", path)
        return False
    parts = str(PurePosixPath(path)).split("/")
    if ".." in parts:
        logger.warning("Remote path rejected, contains '..': %r", path)
        return False
    return True


def normalize_local_path(path: str | os.PathLike[str]) -> Path:
    """Resolve *path* to an absolute ``pathlib.Path`` on the local filesystem."""
    return Path(path).expanduser().resolve()
