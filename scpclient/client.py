"""High-level SCP client.

:class:`Client` opens one session per transfer, starts the remote ``scp``
command, and runs the protocol unit and the process-exit unit under
:func:`~scpclient.harness.supervise`.  The session is always closed when the
call returns, which is also what unblocks a cancelled transfer.

Remote paths are shell-quoted into the remote command line.  Quoting keeps a
path a single word but does not vet it; restricting which remote paths are
acceptable is the caller's job.
"""

from __future__ import annotations

import io
import logging
import os
import posixpath
from pathlib import Path
from typing import Any, BinaryIO, Callable, Optional, TypeVar

from scpclient.config import ConfigManager
from scpclient.connection import ConnectionError, SSHConnection
from scpclient.errors import FormatError
from scpclient.harness import CancelToken, supervise
from scpclient.progress import PassThru, ProgressCallback
from scpclient.protocol import FileInfos
from scpclient.session import Session, build_command
from scpclient.transfer import (
    DOWNLOAD_FLAGS,
    PRESERVE_FLAGS,
    UPLOAD_FLAGS,
    download,
    download_preserve,
    upload,
)
from scpclient.utils.path_helpers import validate_remote_path

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Client:
    """SCP client bound to one remote host.

    Any object with an ``open_session()`` method returning a
    :class:`~scpclient.session.Session` can serve as *connection*; by
    default an :class:`~scpclient.connection.SSHConnection` is built on
    :meth:`connect`.
    """

    def __init__(
        self,
        host: str,
        connection: Any = None,
        remote_binary: str = "scp",
        timeout: float = 0,
        **connection_options: Any,
    ) -> None:
        """Initialise the client (does NOT connect yet).

        Args:
            host: Remote host name or address.
            connection: Pre-built connection; skips :meth:`connect`'s setup.
            remote_binary: Path of the ``scp`` program on the remote host.
            timeout: Overall limit in seconds for each transfer, 0 for none.
            **connection_options: Passed to :class:`SSHConnection`.
        """
        self.host = host
        self.remote_binary = remote_binary
        self.timeout = timeout
        self._connection = connection
        self._connection_options = connection_options

    def __enter__(self) -> Client:
        self.connect()
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    @property
    def connection(self) -> Any:
        """The underlying connection; close it only through :meth:`close`."""
        return self._connection

    def connect(self) -> None:
        """Connect to the remote host, building an :class:`SSHConnection` if needed."""
        if self._connection is None:
            self._connection = SSHConnection(self.host, **self._connection_options)
        connect = getattr(self._connection, "connect", None)
        if connect is not None:
            connect()

    def close(self) -> None:
        """Disconnect from the remote host."""
        disconnect = getattr(self._connection, "disconnect", None)
        if disconnect is not None:
            disconnect()

    def _open_session(self) -> Session:
        if self._connection is None:
            raise ConnectionError(f"Not connected to {self.host}; call connect() first")
        return self._connection.open_session()

    # ------------------------------------------------------------------
    # Supervised run
    # ------------------------------------------------------------------

    def _run(
        self,
        flags: str,
        remote_path: str,
        exchange: Callable[[Session], T],
        cancel: CancelToken | None,
    ) -> T:
        """Start ``<binary> <flags> <path>`` and supervise *exchange* against it."""
        if not validate_remote_path(remote_path):
            raise FormatError(f"Invalid remote path: {remote_path!r}")

        command = build_command(self.remote_binary, flags, remote_path)
        outcome: list[T] = []

        session = self._open_session()
        try:
            session.start(command)

            def _protocol() -> None:
                try:
                    outcome.append(exchange(session))
                finally:
                    # EOF lets the remote scp exit whatever the outcome
                    session.close_stdin()

            supervise(
                _protocol,
                session.wait,
                cancel=cancel,
                timeout=self.timeout or None,
                name=f"scp-{self.host}",
            )
        except Exception as exc:
            logger.error("Transfer %r failed: %s", command, exc)
            raise
        finally:
            session.close()
        return outcome[0]

    # ------------------------------------------------------------------
    # Upload
    # ------------------------------------------------------------------

    def copy(
        self,
        reader: BinaryIO,
        remote_path: str,
        permissions: int | str,
        size: int,
        cancel: CancelToken | None = None,
        pass_thru: Optional[PassThru] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Upload exactly *size* bytes from *reader* to *remote_path*.

        Args:
            reader: Binary stream positioned at the start of the payload.
            remote_path: Destination on the remote host.
            permissions: Mode as an int (``0o644``) or octal string (``"0644"``).
            size: Number of bytes to send; *reader* must provide them all.
            cancel: Token that aborts the wait when cancelled.
            pass_thru: Factory wrapping *reader* to observe the payload.
            on_progress: Called with the fraction sent so far.

        Raises:
            ScpError: Any transfer failure; see :mod:`scpclient.errors`.
        """
        self._run(
            UPLOAD_FLAGS,
            remote_path,
            lambda session: upload(
                session, reader, remote_path, permissions, size,
                pass_thru=pass_thru, on_progress=on_progress,
            ),
            cancel,
        )

    def copy_from_file(
        self,
        file: BinaryIO,
        remote_path: str,
        permissions: int | str | None = None,
        cancel: CancelToken | None = None,
        pass_thru: Optional[PassThru] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Upload an open file, taking its size (and by default its mode) from ``fstat``."""
        stat = os.fstat(file.fileno())
        if permissions is None:
            permissions = stat.st_mode & 0o7777
        self.copy(
            file, remote_path, permissions, stat.st_size - file.tell(),
            cancel=cancel, pass_thru=pass_thru, on_progress=on_progress,
        )

    def copy_file(
        self,
        reader: BinaryIO,
        remote_path: str,
        permissions: int | str,
        cancel: CancelToken | None = None,
        pass_thru: Optional[PassThru] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        """Upload a stream of unknown length.

        The stream is read to EOF into memory first; use :meth:`copy` when the
        size is known in advance.
        """
        contents = reader.read()
        self.copy(
            io.BytesIO(contents), remote_path, permissions, len(contents),
            cancel=cancel, pass_thru=pass_thru, on_progress=on_progress,
        )

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    def copy_from_remote(
        self,
        writer: BinaryIO,
        remote_path: str,
        preserve: bool = False,
        cancel: CancelToken | None = None,
        pass_thru: Optional[PassThru] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> FileInfos:
        """Download *remote_path* into *writer*.

        Args:
            writer: Binary sink receiving the payload.
            remote_path: Source on the remote host.
            preserve: Also request modification and access times (``-p``).
            cancel: Token that aborts the wait when cancelled.
            pass_thru: Factory wrapping the session output during the body.
            on_progress: Called with the fraction received so far.

        Returns:
            The file's metadata; ``mtime``/``atime`` are set only with *preserve*.
        """
        if preserve:
            flags, exchange = PRESERVE_FLAGS, download_preserve
        else:
            flags, exchange = DOWNLOAD_FLAGS, download
        return self._run(
            flags,
            remote_path,
            lambda session: exchange(session, writer, pass_thru=pass_thru, on_progress=on_progress),
            cancel,
        )

    def copy_from_remote_file_infos(
        self,
        writer: BinaryIO,
        remote_path: str,
        cancel: CancelToken | None = None,
        pass_thru: Optional[PassThru] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> FileInfos:
        """Download with times preserved and return the full metadata."""
        return self.copy_from_remote(
            writer, remote_path, preserve=True,
            cancel=cancel, pass_thru=pass_thru, on_progress=on_progress,
        )

    def copy_from_remote_to_path(
        self,
        local_path: str | os.PathLike[str],
        remote_path: str,
        preserve: bool = True,
        cancel: CancelToken | None = None,
        pass_thru: Optional[PassThru] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> FileInfos:
        """Download to a local file; with *preserve*, apply the remote mode and times.

        Writes to ``<local_path>.tmp`` and renames on success so a failed
        transfer never leaves a truncated file at *local_path*.
        """
        dest = Path(local_path)
        if dest.is_dir():
            dest = dest / posixpath.basename(remote_path.rstrip("/"))
        tmp_local = dest.with_name(dest.name + ".tmp")

        try:
            with open(tmp_local, "wb") as local_fh:
                infos = self.copy_from_remote(
                    local_fh, remote_path, preserve=preserve,
                    cancel=cancel, pass_thru=pass_thru, on_progress=on_progress,
                )
            if preserve:
                os.chmod(tmp_local, infos.permissions)
                if infos.mtime is not None and infos.atime is not None:
                    os.utime(tmp_local, (infos.atime, infos.mtime))
            os.replace(tmp_local, dest)
        except BaseException:
            try:
                os.remove(tmp_local)
            except OSError:
                pass
            raise

        logger.info("Saved %s to %s", remote_path, dest)
        return infos


# ---------------------------------------------------------------------------
# Configurer
# ---------------------------------------------------------------------------


class Configurer:
    """Fluent builder for :class:`Client`.

    Example::

        client = Configurer("example.com").username("deploy").timeout(60).create()
    """

    def __init__(self, host: str) -> None:
        self._host = host
        self._remote_binary = "scp"
        self._timeout: float = 0
        self._connection: Any = None
        self._options: dict[str, Any] = {}

    @classmethod
    def from_config(cls, config: ConfigManager, profile: str | None = None, host: str | None = None) -> Configurer:
        """Seed a builder from stored settings and an optional host profile."""
        settings = config.resolve(profile)
        target = host or settings.get("host")
        if not target:
            raise ValueError("No host given and the profile does not name one")
        builder = (
            cls(target)
            .remote_binary(settings["remote_binary"])
            .timeout(settings["timeout"])
            .port(settings["port"])
            .option("connect_timeout", settings["connect_timeout"])
            .option("keepalive_interval", settings["keepalive_interval"])
        )
        for key in ("username", "auth_type", "key_path"):
            if settings.get(key):
                builder.option(key, settings[key])
        return builder

    def remote_binary(self, path: str) -> Configurer:
        self._remote_binary = path
        return self

    def timeout(self, seconds: float) -> Configurer:
        self._timeout = seconds
        return self

    def port(self, port: int) -> Configurer:
        return self.option("port", port)

    def username(self, username: str) -> Configurer:
        return self.option("username", username)

    def option(self, key: str, value: Any) -> Configurer:
        """Set an :class:`SSHConnection` keyword argument."""
        self._options[key] = value
        return self

    def connection(self, connection: Any) -> Configurer:
        """Use an existing connection instead of building one."""
        self._connection = connection
        return self

    def create(self) -> Client:
        return Client(
            self._host,
            connection=self._connection,
            remote_binary=self._remote_binary,
            timeout=self._timeout,
            **self._options,
        )
