"""Tests for sftpbridge/connection.py: RemoteSession and host-key handling."""

from __future__ import annotations

import socket
import stat
from pathlib import Path
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from sftpbridge.connection import (
    ConnectionState,
    HostKeyPolicy,
    RemoteSession,
    _CapturingPolicy,
    accept_host_key,
    delete_password,
    load_password,
    store_password,
)
from sftpbridge.errors import AuthError, ConnectError, IoError, NotFoundError, UnknownHostError
from sftpbridge.models import KeyCredential, PasswordCredential, RemoteEndpoint


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _attr(name: str, *, is_dir: bool = False, size: int = 0, mtime: int = 1_700_000_000) -> paramiko.SFTPAttributes:
    attr = paramiko.SFTPAttributes()
    attr.filename = name
    attr.st_mode = (stat.S_IFDIR | 0o755) if is_dir else (stat.S_IFREG | 0o644)
    attr.st_size = size
    attr.st_mtime = mtime
    return attr


def _session(sftp: MagicMock | None = None) -> RemoteSession:
    endpoint = RemoteEndpoint(host="h", username="u", credential=PasswordCredential("p"))
    return RemoteSession("sid", endpoint, MagicMock(), sftp or MagicMock())


@pytest.fixture()
def ssh_client_cls():
    with patch("sftpbridge.connection.paramiko.SSHClient") as cls:
        yield cls


# ---------------------------------------------------------------------------
# RemoteSession.open
# ---------------------------------------------------------------------------


class TestOpen:
    def test_no_credential_is_auth_error(self, ssh_client_cls: MagicMock) -> None:
        endpoint = RemoteEndpoint(host="h", username="u")
        with pytest.raises(AuthError, match="No authentication method"):
            RemoteSession.open("sid", endpoint)
        ssh_client_cls.assert_not_called()

    def test_password_credential(self, ssh_client_cls: MagicMock, endpoint: RemoteEndpoint, tmp_path: Path) -> None:
        session = RemoteSession.open("sid", endpoint, known_hosts_path=tmp_path / "none")

        client = ssh_client_cls.return_value
        kwargs = client.connect.call_args.kwargs
        assert kwargs["hostname"] == "sftp.example.com"
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "foo"
        assert kwargs["password"] == "pass"
        assert kwargs["look_for_keys"] is False
        assert kwargs["allow_agent"] is False
        assert "key_filename" not in kwargs
        assert session.session_id == "sid"
        assert session.state is ConnectionState.CONNECTED
        client.get_transport.return_value.set_keepalive.assert_called_once_with(30)
        client.open_sftp.assert_called_once()

    def test_key_credential(self, ssh_client_cls: MagicMock, tmp_path: Path) -> None:
        endpoint = RemoteEndpoint(
            host="h", username="u", credential=KeyCredential(key_path="/keys/id_ed25519", passphrase="secret")
        )
        with patch("sftpbridge.connection.paramiko.PKey.from_path") as from_path:
            RemoteSession.open("sid", endpoint, known_hosts_path=tmp_path / "none")

        from_path.assert_called_once_with("/keys/id_ed25519", "secret")
        kwargs = ssh_client_cls.return_value.connect.call_args.kwargs
        assert kwargs["pkey"] is from_path.return_value
        assert "key_filename" not in kwargs
        assert "password" not in kwargs

    def test_missing_key_file_is_auth_error(self, ssh_client_cls: MagicMock, tmp_path: Path) -> None:
        missing = str(tmp_path / "nope")
        endpoint = RemoteEndpoint(host="h", username="u", credential=KeyCredential(key_path=missing))

        with pytest.raises(AuthError) as info:
            RemoteSession.open("sid", endpoint)

        assert info.value.path == missing
        assert info.value.kind == "auth"
        ssh_client_cls.assert_not_called()

    def test_wrong_passphrase_is_auth_error(self, ssh_client_cls: MagicMock, tmp_path: Path) -> None:
        key_file = tmp_path / "id_rsa"
        paramiko.RSAKey.generate(2048).write_private_key_file(str(key_file), password="right")
        endpoint = RemoteEndpoint(
            host="h", username="u", credential=KeyCredential(key_path=str(key_file), passphrase="wrong")
        )

        with pytest.raises(AuthError, match="Cannot load private key"):
            RemoteSession.open("sid", endpoint)
        ssh_client_cls.return_value.connect.assert_not_called()

    def test_encrypted_key_without_passphrase_is_auth_error(
        self, ssh_client_cls: MagicMock, tmp_path: Path
    ) -> None:
        key_file = tmp_path / "id_rsa"
        paramiko.RSAKey.generate(2048).write_private_key_file(str(key_file), password="right")
        endpoint = RemoteEndpoint(host="h", username="u", credential=KeyCredential(key_path=str(key_file)))

        with pytest.raises(AuthError):
            RemoteSession.open("sid", endpoint)

    def test_rejected_credential_is_auth_error(self, ssh_client_cls: MagicMock, endpoint: RemoteEndpoint) -> None:
        client = ssh_client_cls.return_value
        client.connect.side_effect = paramiko.AuthenticationException("bad password")

        with pytest.raises(AuthError):
            RemoteSession.open("sid", endpoint)
        client.close.assert_called_once()

    @pytest.mark.parametrize(
        "exc",
        [socket.timeout("timed out"), ConnectionRefusedError(111, "refused"), paramiko.SSHException("banner")],
    )
    def test_unreachable_is_connect_error(self, ssh_client_cls: MagicMock, endpoint: RemoteEndpoint, exc) -> None:
        client = ssh_client_cls.return_value
        client.connect.side_effect = exc

        with pytest.raises(ConnectError) as info:
            RemoteSession.open("sid", endpoint)
        assert not isinstance(info.value, UnknownHostError)
        client.close.assert_called_once()

    def test_host_key_mismatch(self, ssh_client_cls: MagicMock, endpoint: RemoteEndpoint) -> None:
        got, expected = MagicMock(), MagicMock()
        got.get_base64.return_value = "AAA"
        expected.get_base64.return_value = "BBB"
        ssh_client_cls.return_value.connect.side_effect = paramiko.BadHostKeyException("h", got, expected)

        with pytest.raises(UnknownHostError, match="mismatch"):
            RemoteSession.open("sid", endpoint)

    def test_sftp_channel_failure_is_connect_error(self, ssh_client_cls: MagicMock, endpoint: RemoteEndpoint) -> None:
        client = ssh_client_cls.return_value
        client.open_sftp.side_effect = paramiko.SSHException("subsystem request failed")

        with pytest.raises(ConnectError, match="SFTP session"):
            RemoteSession.open("sid", endpoint)
        client.close.assert_called_once()

    def test_strict_policy_and_known_hosts(
        self, ssh_client_cls: MagicMock, endpoint: RemoteEndpoint, tmp_path: Path
    ) -> None:
        known_hosts = tmp_path / "known_hosts"
        known_hosts.write_text("", encoding="utf-8")

        RemoteSession.open("sid", endpoint, known_hosts_path=known_hosts)

        client = ssh_client_cls.return_value
        client.load_host_keys.assert_called_once_with(str(known_hosts))
        (policy,), _ = client.set_missing_host_key_policy.call_args
        assert isinstance(policy, _CapturingPolicy)

    def test_auto_add_policy(self, ssh_client_cls: MagicMock, endpoint: RemoteEndpoint, tmp_path: Path) -> None:
        RemoteSession.open(
            "sid", endpoint, host_key_policy=HostKeyPolicy.AUTO_ADD, known_hosts_path=tmp_path / "none"
        )
        (policy,), _ = ssh_client_cls.return_value.set_missing_host_key_policy.call_args
        assert isinstance(policy, paramiko.AutoAddPolicy)


class TestHostKeys:
    def test_capturing_policy_reports_fingerprint(self) -> None:
        key = MagicMock()
        key.get_fingerprint.return_value = b"\x01\xab\xff"
        key.get_name.return_value = "ssh-ed25519"

        with pytest.raises(UnknownHostError) as info:
            _CapturingPolicy().missing_host_key(MagicMock(), "nas.local", key)

        assert info.value.hostname == "nas.local"
        assert info.value.key_type == "ssh-ed25519"
        assert info.value.fingerprint == "01:ab:ff"
        assert info.value.key is key
        assert info.value.kind == "connect"

    def test_accept_host_key_writes_file(self, tmp_path: Path) -> None:
        key = MagicMock()
        key.get_name.return_value = "ssh-ed25519"
        target = tmp_path / "ssh" / "known_hosts"

        with patch("sftpbridge.connection.paramiko.HostKeys") as host_keys_cls:
            accept_host_key("nas.local", key, known_hosts_path=target)

        assert target.parent.is_dir()
        host_keys = host_keys_cls.return_value
        host_keys.add.assert_called_once_with("nas.local", "ssh-ed25519", key)
        host_keys.save.assert_called_once_with(str(target))


class TestKeyring:
    def test_store_load_delete(self) -> None:
        with patch("sftpbridge.connection.keyring") as kr:
            kr.get_password.return_value = "pw"
            store_password("foo", "h", "pw")
            assert load_password("foo", "h") == "pw"
            delete_password("foo", "h")

        kr.set_password.assert_called_once_with("sftpbridge", "foo@h", "pw")
        kr.get_password.assert_called_once_with("sftpbridge", "foo@h")
        kr.delete_password.assert_called_once_with("sftpbridge", "foo@h")


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


class TestListDirectory:
    def test_order_and_hidden_filter(self) -> None:
        sftp = MagicMock()
        sftp.listdir_attr.return_value = [
            _attr("b.txt", size=5),
            _attr(".hidden"),
            _attr("zdir", is_dir=True),
            _attr("A.txt", size=3),
            _attr(".."),
            _attr(".config", is_dir=True),
            _attr("Adir", is_dir=True),
            _attr("c.TXT"),
        ]
        entries = _session(sftp).list_directory("/home")

        assert [e.name for e in entries] == ["..", "Adir", "zdir", "A.txt", "b.txt", "c.TXT"]

    def test_parent_link_first_even_as_file(self) -> None:
        sftp = MagicMock()
        sftp.listdir_attr.return_value = [_attr("adir", is_dir=True), _attr("..", is_dir=False)]

        assert [e.name for e in _session(sftp).list_directory("/")][0] == ".."

    def test_entry_fields(self) -> None:
        sftp = MagicMock()
        sftp.listdir_attr.return_value = [_attr("notes.md", size=42, mtime=1_700_000_123)]

        (entry,) = _session(sftp).list_directory("/home/foo")

        assert entry.to_dict() == {
            "name": "notes.md",
            "path": "/home/foo/notes.md",
            "is_dir": False,
            "size": 42,
            "modified": 1_700_000_123,
            "permissions": "-rw-r--r--",
        }

    def test_listing_is_idempotent(self) -> None:
        sftp = MagicMock()
        sftp.listdir_attr.return_value = [_attr("b"), _attr("a", is_dir=True), _attr("C")]
        session = _session(sftp)

        assert session.list_directory("/") == session.list_directory("/")

    def test_read_failure_is_io_error(self) -> None:
        sftp = MagicMock()
        sftp.listdir_attr.side_effect = FileNotFoundError(2, "No such file")

        with pytest.raises(IoError) as info:
            _session(sftp).list_directory("/missing")
        assert info.value.path == "/missing"
        assert info.value.kind == "io"

    def test_ssh_failure_is_io_error(self) -> None:
        sftp = MagicMock()
        sftp.listdir_attr.side_effect = paramiko.SSHException("channel closed")

        with pytest.raises(IoError, match="channel closed"):
            _session(sftp).list_directory("/")


class TestMutations:
    def test_create_directory(self) -> None:
        sftp = MagicMock()
        _session(sftp).create_directory("/new")
        sftp.mkdir.assert_called_once_with("/new", 0o755)

    def test_delete_file_and_directory(self) -> None:
        sftp = MagicMock()
        session = _session(sftp)
        session.delete("/f.txt", is_dir=False)
        session.delete("/d", is_dir=True)
        sftp.remove.assert_called_once_with("/f.txt")
        sftp.rmdir.assert_called_once_with("/d")

    def test_rename(self) -> None:
        sftp = MagicMock()
        _session(sftp).rename("/old", "/new")
        sftp.rename.assert_called_once_with("/old", "/new")

    def test_permission_denied_is_io_error(self) -> None:
        sftp = MagicMock()
        sftp.mkdir.side_effect = PermissionError(13, "Permission denied")

        with pytest.raises(IoError, match="Permission denied"):
            _session(sftp).create_directory("/root/x")

    def test_stat(self) -> None:
        sftp = MagicMock()
        sftp.stat.return_value = _attr("", is_dir=True)

        entry = _session(sftp).stat("/home/foo/")
        assert entry.name == "foo"
        assert entry.path == "/home/foo/"
        assert entry.is_dir


class TestLifecycle:
    def test_close_releases_connection_once(self) -> None:
        sftp = MagicMock()
        session = _session(sftp)
        client = session._client

        session.close()
        session.close()

        sftp.close.assert_called_once()
        client.close.assert_called_once()
        assert session.state is ConnectionState.CLOSED
        assert not session.is_active

    def test_operations_after_close_raise_not_found(self) -> None:
        session = _session()
        session.close()

        with pytest.raises(NotFoundError):
            session.list_directory("/")
        with pytest.raises(NotFoundError):
            with session.exclusive():
                pass

    def test_open_write_enables_pipelining(self) -> None:
        sftp = MagicMock()
        fh = _session(sftp).open_write("/x")
        sftp.open.assert_called_once_with("/x", "wb")
        fh.set_pipelined.assert_called_once_with(True)

    def test_open_read_reports_size_and_prefetches(self) -> None:
        sftp = MagicMock()
        sftp.open.return_value.stat.return_value = _attr("x", size=1234)

        fh, size = _session(sftp).open_read("/x")

        assert size == 1234
        fh.prefetch.assert_called_once_with(1234)
