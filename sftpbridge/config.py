"""Configuration and endpoint-profile management for sftpbridge.

All settings are stored as JSON files under ``~/.sftpbridge/``.
Passwords and key passphrases are never written to disk; they are
delegated to ``keyring``.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from sftpbridge.connection import load_password
from sftpbridge.models import KeyCredential, PasswordCredential, RemoteEndpoint

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_CONFIG: dict[str, Any] = {
    "ssh_timeout": 15,
    "keepalive_interval": 30,
    "host_key_policy": "strict",
    "known_hosts_path": str(Path.home() / ".ssh" / "known_hosts"),
    "max_concurrent_transfers": 4,
    "remote_start_path": "/",
}

_SECRET_KEYS = ("password", "passphrase")

# ---------------------------------------------------------------------------
# ConfigManager
# ---------------------------------------------------------------------------


class ConfigManager:
    """Settings plus saved endpoint profiles, persisted as JSON.

    Every write goes to a temp file that then replaces the target, so an
    interrupted write never leaves half a file.  An unreadable file is logged
    and replaced with defaults (settings) or an empty list (profiles).
    """

    def __init__(self, base_dir: Path | None = None) -> None:
        self._base = base_dir or Path.home() / ".sftpbridge"
        self._config_path = self._base / "config.json"
        self._profiles_path = self._base / "profiles.json"

        self._base.mkdir(parents=True, exist_ok=True)
        self._config: dict[str, Any] = self._load_config()
        self._profiles: list[dict[str, Any]] = self._load_profiles()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _write_json(self, path: Path, data: Any) -> None:
        tmp = path.with_suffix(".tmp")
        try:
            tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            logger.error("Could not write %s: %s", path, exc)
            raise

    def _read_json(self, path: Path, expected: type) -> Any:
        """Parse *path*; raise ValueError if its root is not *expected*."""
        loaded = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(loaded, expected):
            raise ValueError(f"{path.name} root must be a JSON {expected.__name__}")
        return loaded

    def _load_config(self) -> dict[str, Any]:
        config = dict(DEFAULT_CONFIG)
        if not self._config_path.exists():
            logger.debug("Writing default settings to %s", self._config_path)
            self._write_json(self._config_path, config)
            return config
        try:
            # Keys added to DEFAULT_CONFIG since the file was written fall back to defaults
            config.update(self._read_json(self._config_path, dict))
        except (ValueError, OSError) as exc:
            logger.warning("Unreadable %s (%s), using defaults", self._config_path.name, exc)
            config = dict(DEFAULT_CONFIG)
            self._write_json(self._config_path, config)
        return config

    def _load_profiles(self) -> list[dict[str, Any]]:
        if not self._profiles_path.exists():
            return []
        try:
            stored = self._read_json(self._profiles_path, list)
            if not all(isinstance(p, dict) for p in stored):
                raise ValueError("every profile must be a JSON object")
        except (ValueError, OSError) as exc:
            logger.warning("Unreadable %s (%s), starting with no profiles", self._profiles_path.name, exc)
            self._write_json(self._profiles_path, [])
            return []
        profiles = [_without_secrets(p) for p in stored]
        if profiles != stored:
            logger.warning("Removed secrets found in %s", self._profiles_path.name)
            self._write_json(self._profiles_path, profiles)
        return profiles

    def _save_profiles(self) -> None:
        self._profiles = [_without_secrets(p) for p in self._profiles]
        self._write_json(self._profiles_path, self._profiles)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get(self, key: str, default: Any = None) -> Any:
        return self._config.get(key, default)

    def set(self, key: str, value: Any) -> None:
        """Change one setting and persist immediately."""
        self._config[key] = value
        self._write_json(self._config_path, self._config)
        logger.debug("Setting %s = %r", key, value)

    def get_all(self) -> dict[str, Any]:
        return dict(self._config)

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def get_profiles(self) -> list[dict[str, Any]]:
        return list(self._profiles)

    def get_profile(self, name: str) -> dict[str, Any] | None:
        """Return a copy of the profile called *name*, or None."""
        for profile in self._profiles:
            if profile.get("name") == name:
                return dict(profile)
        return None

    def save_profile(self, profile: dict[str, Any]) -> None:
        """Insert *profile*, or replace the one with the same ``name``.

        Passwords and passphrases are dropped; keep them in the OS keyring
        with :func:`sftpbridge.connection.store_password`.

        Raises:
            ValueError: If ``name`` or ``host`` is missing.
        """
        name = profile.get("name")
        if not name:
            raise ValueError("Profile must have a non-empty 'name' field")
        if not profile.get("host"):
            raise ValueError("Profile must have a non-empty 'host' field")

        index = next((i for i, p in enumerate(self._profiles) if p.get("name") == name), None)
        if index is None:
            self._profiles.append(profile)
        else:
            self._profiles[index] = profile
        self._save_profiles()
        logger.info("Saved profile %s", name)

    def delete_profile(self, name: str) -> bool:
        """Remove the profile called *name*; return False if there was none."""
        remaining = [p for p in self._profiles if p.get("name") != name]
        if len(remaining) == len(self._profiles):
            logger.warning("No profile named %s to delete", name)
            return False
        self._profiles = remaining
        self._save_profiles()
        logger.info("Deleted profile %s", name)
        return True


def _without_secrets(profile: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in profile.items() if k not in _SECRET_KEYS}


def endpoint_from_profile(profile: dict[str, Any], passphrase: str | None = None) -> RemoteEndpoint:
    """Build a :class:`RemoteEndpoint` from a saved profile.

    Profiles with a ``key_path`` use key authentication (*passphrase* is
    supplied by the caller).  Otherwise the password is looked up in the OS
    keyring; when none is stored the endpoint has no credential and
    connecting fails with ``AuthError``.
    """
    host = profile["host"]
    username = profile.get("username") or ""
    if profile.get("key_path"):
        credential = KeyCredential(key_path=str(Path(profile["key_path"]).expanduser()), passphrase=passphrase)
    else:
        password = load_password(username, host)
        credential = PasswordCredential(password) if password else None
        if credential is None:
            logger.warning("No stored password for %s@%s", username, host)
    return RemoteEndpoint(
        host=host,
        username=username,
        port=int(profile.get("port", 22)),
        credential=credential,
    )
