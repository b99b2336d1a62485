"""Tests for scpclient/client.py — Client entry points and Configurer."""

from __future__ import annotations

import io
import os
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from scpclient.client import Client, Configurer
from scpclient.config import ConfigManager
from scpclient.connection import ConnectionError
from scpclient.errors import (
    CancellationError,
    DeadlineExceeded,
    FormatError,
    ProcessError,
    ProtocolError,
    ScpError,
)
from scpclient.harness import CancelToken
from fakes import BlockingReader, FakeSession


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def client(mock_connection: MagicMock) -> Client:
    """Return a Client wired to the mock connection."""
    return Client("example.com", connection=mock_connection, remote_binary="/usr/bin/scp")


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


class TestCopy:
    def test_copy_runs_upload_command(self, client: Client, mock_connection: MagicMock) -> None:
        session = FakeSession(b"\x00\x00")
        mock_connection.open_session.return_value = session
        client.copy(io.BytesIO(b"hello"), "/srv/my file.txt", "0644", 5)
        assert session.command == "/usr/bin/scp -qt '/srv/my file.txt'"
        assert session.written == b"C0644 5 my file.txt\nhello\x00"
        assert session.stdin_closed
        assert session.closed

    def test_copy_header_failure(self, client: Client, mock_connection: MagicMock) -> None:
        session = FakeSession(b"\x02no space\n")
        mock_connection.open_session.return_value = session
        with pytest.raises(ProtocolError, match="no space"):
            client.copy(io.BytesIO(b"hello"), "/srv/a.txt", "0644", 5)
        assert session.written == b"C0644 5 a.txt\n"
        assert session.closed

    def test_unwritable_destination_surfaces_peer_message(
        self, client: Client, mock_connection: MagicMock
    ) -> None:
        session = FakeSession(
            b"\x01scp: /srv/ro/a.txt: Permission denied\n"
            b"\x01scp: protocol error: expected control record\n",
            exit_error=ProcessError("remote command exited with status 1", 1),
            block_exit=True,
            exit_on_eof=True,
        )
        mock_connection.open_session.return_value = session
        with pytest.raises(ProtocolError, match="Permission denied"):
            client.copy(io.BytesIO(b"hello"), "/srv/ro/a.txt", "0644", 5)
        assert session.written == b"C0644 5 a.txt\n"

    def test_process_failure_reported(self, client: Client, mock_connection: MagicMock) -> None:
        session = FakeSession(b"\x00\x00", exit_error=ProcessError("exited with status 1", 1))
        mock_connection.open_session.return_value = session
        with pytest.raises(ProcessError):
            client.copy(io.BytesIO(b"hi"), "a.txt", "0644", 2)

    def test_copy_file_reads_unknown_length(self, client: Client, mock_connection: MagicMock) -> None:
        session = FakeSession(b"\x00\x00")
        mock_connection.open_session.return_value = session
        client.copy_file(io.BytesIO(b"streamed"), "b.txt", "0600")
        assert session.written == b"C0600 8 b.txt\nstreamed\x00"

    def test_copy_from_file_uses_stat(
        self, client: Client, mock_connection: MagicMock, tmp_path: Path
    ) -> None:
        local = tmp_path / "run.sh"
        local.write_bytes(b"#!/bin/sh\n")
        os.chmod(local, 0o750)
        session = FakeSession(b"\x00\x00")
        mock_connection.open_session.return_value = session
        with open(local, "rb") as fh:
            client.copy_from_file(fh, "/opt/run.sh")
        assert session.written.startswith(b"C0750 10 run.sh\n")

    @pytest.mark.parametrize("bad_path", ["", "a\x00b", "line\nbreak"])
    def test_rejects_unrepresentable_paths(self, client: Client, bad_path: str) -> None:
        with pytest.raises(FormatError) as excinfo:
            client.copy(io.BytesIO(b""), bad_path, "0644", 0)
        assert isinstance(excinfo.value, ScpError)

    def test_not_connected(self) -> None:
        with pytest.raises(ConnectionError):
            Client("example.com").copy(io.BytesIO(b""), "a", "0644", 0)


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


class TestCopyFromRemote:
    def test_plain_download(self, client: Client, mock_connection: MagicMock) -> None:
        session = FakeSession(b"C0644 5 test.txt\nhello")
        mock_connection.open_session.return_value = session
        sink = io.BytesIO()
        infos = client.copy_from_remote(sink, "/srv/test.txt")
        assert session.command == "/usr/bin/scp -f /srv/test.txt"
        assert sink.getvalue() == b"hello"
        assert infos.size == 5

    def test_file_infos_download(self, client: Client, mock_connection: MagicMock) -> None:
        session = FakeSession(b"T1700000000 0 1700000001 0\nC0644 5 test.txt\nhello")
        mock_connection.open_session.return_value = session
        infos = client.copy_from_remote_file_infos(io.BytesIO(), "test.txt")
        assert session.command == "/usr/bin/scp -f -p test.txt"
        assert (infos.mtime, infos.atime) == (1700000000, 1700000001)

    def test_download_to_path_applies_metadata(
        self, client: Client, mock_connection: MagicMock, tmp_path: Path
    ) -> None:
        session = FakeSession(b"T1700000000 0 1700000001 0\nC0640 5 test.txt\nhello")
        mock_connection.open_session.return_value = session
        infos = client.copy_from_remote_to_path(tmp_path, "/srv/test.txt")
        dest = tmp_path / "test.txt"
        assert dest.read_bytes() == b"hello"
        assert int(dest.stat().st_mtime) == 1700000000
        assert dest.stat().st_mode & 0o777 == 0o640
        assert infos.filename == "test.txt"
        assert not (tmp_path / "test.txt.tmp").exists()

    def test_failed_download_leaves_no_file(
        self, client: Client, mock_connection: MagicMock, tmp_path: Path
    ) -> None:
        mock_connection.open_session.return_value = FakeSession(b"\x02scp: gone\n")
        dest = tmp_path / "out.txt"
        with pytest.raises(ProtocolError, match="scp: gone"):
            client.copy_from_remote_to_path(dest, "/srv/gone", preserve=False)
        assert not dest.exists()
        assert not (tmp_path / "out.txt.tmp").exists()


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestCancellation:
    def test_cancel_closes_session(self, client: Client, mock_connection: MagicMock) -> None:
        session = FakeSession(stdout=BlockingReader(), block_exit=True)
        mock_connection.open_session.return_value = session
        token = CancelToken()
        token.cancel("user abort")
        with pytest.raises(CancellationError, match="user abort"):
            client.copy_from_remote(io.BytesIO(), "big.iso", cancel=token)
        assert session.closed

    def test_client_timeout(self, mock_connection: MagicMock) -> None:
        session = FakeSession(stdout=BlockingReader(), block_exit=True)
        mock_connection.open_session.return_value = session
        client = Client("example.com", connection=mock_connection, timeout=0.1)
        started = time.monotonic()
        with pytest.raises(DeadlineExceeded):
            client.copy_from_remote(io.BytesIO(), "big.iso")
        assert time.monotonic() - started < 5
        assert session.closed


# ---------------------------------------------------------------------------
# Configurer
# ---------------------------------------------------------------------------


class TestConfigurer:
    def test_builds_client(self, mock_connection: MagicMock) -> None:
        client = (
            Configurer("example.com")
            .remote_binary("/opt/scp")
            .timeout(30)
            .connection(mock_connection)
            .create()
        )
        assert client.host == "example.com"
        assert client.remote_binary == "/opt/scp"
        assert client.timeout == 30
        assert client.connection is mock_connection

    def test_from_config_profile(self, tmp_path: Path) -> None:
        config = ConfigManager(base_dir=tmp_path)
        config.set("remote_binary", "/usr/local/bin/scp")
        config.save_profile({"name": "build", "host": "build.internal", "username": "ci", "port": 2222})
        client = Configurer.from_config(config, "build").create()
        assert client.host == "build.internal"
        assert client.remote_binary == "/usr/local/bin/scp"
        assert client._connection_options["username"] == "ci"
        assert client._connection_options["port"] == 2222
        assert client._connection_options["connect_timeout"] == 15
        assert client.timeout == 0

    def test_from_config_requires_host(self, tmp_path: Path) -> None:
        with pytest.raises(ValueError):
            Configurer.from_config(ConfigManager(base_dir=tmp_path))

    def test_connect_builds_ssh_connection(self, monkeypatch: pytest.MonkeyPatch) -> None:
        built = MagicMock()
        monkeypatch.setattr("scpclient.client.SSHConnection", built)
        client = Client("example.com", port=2200, username="deploy")
        client.connect()
        built.assert_called_once_with("example.com", port=2200, username="deploy")
        built.return_value.connect.assert_called_once()
        client.close()
        built.return_value.disconnect.assert_called_once()
