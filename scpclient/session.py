"""Remote command sessions carrying the SCP exchange.

The transfer engine only needs four things from a session: start a
command, a writable stream to the command's stdin, a readable stream from
its stdout, and a way to wait for it to exit.  :class:`Session` names that
contract; :class:`ParamikoSession` implements it over a paramiko channel.
"""

from __future__ import annotations

import logging
import shlex
from typing import BinaryIO, Protocol

import paramiko

from scpclient.errors import ProcessError

logger = logging.getLogger(__name__)

_STDERR_CHUNK = 4096


class Session(Protocol):
    """Opaque remote-command channel owned by the caller."""

    stdin: BinaryIO
    stdout: BinaryIO

    def start(self, command: str) -> None:
        """Start *command* on the remote side; raise :exc:`ProcessError` on failure."""

    def close_stdin(self) -> None:
        """Signal end of input to the remote command."""

    def wait(self) -> None:
        """Block until the command exits; raise :exc:`ProcessError` if it failed."""

    def close(self) -> None:
        """Tear the session down, unblocking any pending reads and writes."""


def build_command(remote_binary: str, flags: str, remote_path: str) -> str:
    """Return ``<binary> <flags> <quoted path>``.

    Quoting keeps the path a single shell word.  It does not make arbitrary
    paths safe to hand to a remote shell: deciding which paths are
    acceptable is the caller's responsibility.
    """
    return f"{remote_binary} {flags} {shlex.quote(remote_path)}"


# ---------------------------------------------------------------------------
# ParamikoSession
# ---------------------------------------------------------------------------


class ParamikoSession:
    """:class:`Session` over a freshly opened paramiko ``Channel``."""

    def __init__(self, channel: paramiko.Channel) -> None:
        self._channel = channel
        self.stdin: BinaryIO = channel.makefile_stdin("wb")
        self.stdout: BinaryIO = channel.makefile("rb")
        self.command: str | None = None

    @classmethod
    def open(cls, transport: paramiko.Transport) -> ParamikoSession:
        """Open a new session channel on *transport*."""
        try:
            channel = transport.open_session()
        except paramiko.SSHException as exc:
            raise ProcessError(f"could not open session: {exc}") from exc
        return cls(channel)

    def start(self, command: str) -> None:
        logger.debug("Starting remote command: %s", command)
        try:
            self._channel.exec_command(command)
        except paramiko.SSHException as exc:
            raise ProcessError(f"failed to start {command!r}: {exc}") from exc
        self.command = command

    def close_stdin(self) -> None:
        try:
            self._channel.shutdown_write()
        except (OSError, EOFError, paramiko.SSHException) as exc:
            logger.debug("shutdown_write failed: %s", exc)

    def _drain_stderr(self) -> str:
        chunks = []
        while self._channel.recv_stderr_ready():
            data = self._channel.recv_stderr(_STDERR_CHUNK)
            if not data:
                break
            chunks.append(data)
        return b"".join(chunks).decode("utf-8", errors="replace").strip()

    def wait(self) -> None:
        status = self._channel.recv_exit_status()
        if status == 0:
            logger.debug("Remote command exited cleanly")
            return
        stderr = self._drain_stderr()
        if status == -1:
            message = "remote command closed without an exit status"
        else:
            message = f"remote command exited with status {status}"
        if stderr:
            message = f"{message}: {stderr}"
        raise ProcessError(message, exit_status=status, stderr=stderr)

    def close(self) -> None:
        try:
            self._channel.close()
        except Exception:
            pass  # Channel already gone with its transport
