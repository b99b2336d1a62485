"""SCP transfer engine.

Runs one of three protocol state machines against a session whose remote
command is already running:

- :func:`upload`             ``scp -qt``   header, ack, body, ``\\0``, ack
- :func:`download`           ``scp -f``    ack, header, ack, body, ack
- :func:`download_preserve`  ``scp -f -p`` ack, times, ack, header, ack, body, ack

Steps are strictly sequential and nothing is retried: the first failed read,
write or peer failure ends the exchange with an exception.
"""

from __future__ import annotations

import logging
import posixpath
from typing import BinaryIO, Optional

from scpclient.errors import ProtocolError, TransportError
from scpclient.progress import (
    PassThru,
    ProgressCallback,
    ProgressReader,
    ProgressTracker,
    ProgressWriter,
)
from scpclient.protocol import (
    IO_ERRORS,
    FileInfos,
    Response,
    ack,
    encode_file_header,
    parse_response,
)
from scpclient.session import Session

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024           # bytes per read/write call

UPLOAD_FLAGS = "-qt"
DOWNLOAD_FLAGS = "-f"
PRESERVE_FLAGS = "-f -p"

# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------


def copy_n(dst: BinaryIO, src: BinaryIO, size: int, chunk_size: int = CHUNK_SIZE) -> int:
    """Copy exactly *size* bytes from *src* to *dst*.

    Returns the number of bytes copied.

    Raises:
        TransportError: A stream failed, or *src* ended before *size* bytes.
    """
    copied = 0
    while copied < size:
        try:
            chunk = src.read(min(chunk_size, size - copied))
        except IO_ERRORS as exc:
            raise TransportError(f"read failed after {copied} of {size} bytes: {exc}") from exc
        if not chunk:
            raise TransportError(f"unexpected end of data after {copied} of {size} bytes")
        try:
            _write_all(dst, chunk)
        except IO_ERRORS as exc:
            raise TransportError(f"write failed after {copied} of {size} bytes: {exc}") from exc
        copied += len(chunk)
    return copied


def _write_all(dst: BinaryIO, data: bytes) -> None:
    """Write all of *data*, looping over short writes from unbuffered sinks."""
    while data:
        written = dst.write(data)
        # buffered and paramiko file objects return None or the full length
        if written is None or written >= len(data):
            return
        if written == 0:
            raise OSError("sink accepted no bytes")
        data = data[written:]


def _write(writer: BinaryIO, data: bytes) -> None:
    try:
        writer.write(data)
        writer.flush()
    except IO_ERRORS as exc:
        raise TransportError(f"failed to write to session: {exc}") from exc


def _flush(stream: BinaryIO) -> None:
    flush = getattr(stream, "flush", None)
    if flush is None:
        return
    try:
        flush()
    except IO_ERRORS as exc:
        raise TransportError(f"failed to flush: {exc}") from exc


def _expect_ack(stdout: BinaryIO, step: str) -> Response:
    response = parse_response(stdout)
    logger.debug("%s: %s", step, response.type.name)
    response.check()
    return response


# ---------------------------------------------------------------------------
# Upload
# ---------------------------------------------------------------------------


def upload(
    session: Session,
    reader: BinaryIO,
    remote_path: str,
    permissions: int | str,
    size: int,
    pass_thru: Optional[PassThru] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> None:
    """Send *size* bytes from *reader* as the file named by *remote_path*.

    The header carries only the base name of *remote_path*; the directory
    part was given to the remote command when it was started.

    Raises:
        ProtocolError: The peer rejected the header or the payload.
        TransportError: A stream failed or *reader* ran short.
    """
    filename = posixpath.basename(remote_path)
    header = encode_file_header(permissions, size, filename)

    if pass_thru is not None:
        reader = pass_thru(reader, size)
    if on_progress is not None:
        reader = ProgressReader(reader, ProgressTracker(total=size, on_progress=on_progress))

    logger.debug("Sending header %r", header)
    _write(session.stdin, header)
    _expect_ack(session.stdout, "header ack")

    copy_n(session.stdin, reader, size)
    _write(session.stdin, b"\x00")
    _expect_ack(session.stdout, "payload ack")
    logger.info("Uploaded %d bytes to %s", size, remote_path)


# ---------------------------------------------------------------------------
# Download
# ---------------------------------------------------------------------------


def _receive_body(
    session: Session,
    writer: BinaryIO,
    infos: FileInfos,
    pass_thru: Optional[PassThru],
    on_progress: Optional[ProgressCallback],
) -> None:
    source = session.stdout
    if pass_thru is not None:
        source = pass_thru(source, infos.size)
    sink = writer
    if on_progress is not None:
        sink = ProgressWriter(writer, ProgressTracker(total=infos.size, on_progress=on_progress))

    copy_n(sink, source, infos.size)
    _flush(writer)


def download(
    session: Session,
    writer: BinaryIO,
    pass_thru: Optional[PassThru] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> FileInfos:
    """Receive one file from a running ``scp -f`` into *writer*.

    Returns the parsed header; ``mtime``/``atime`` stay ``None``.

    Raises:
        ProtocolError: The peer sent a warning or failure instead of a header.
        FormatError: The header could not be parsed.
        TransportError: A stream failed or ended early.
    """
    ack(session.stdin)

    response = parse_response(session.stdout)
    if response.is_failure or response.is_warning:
        raise ProtocolError(response.message, response.type)
    infos = response.parse_file_infos()
    logger.debug("Header: %s", infos)
    ack(session.stdin)

    _receive_body(session, writer, infos, pass_thru, on_progress)
    ack(session.stdin)
    logger.info("Downloaded %d bytes (%s)", infos.size, infos.filename)
    return infos


def _read_preserve_line(session: Session, step: str) -> Response:
    """Read a line in preserve mode.

    Only a standard-framed failure aborts here.  Some peers emit lines in
    this phase that do not follow the status-byte framing, so anything else
    is handed to the line parser, which rejects what it cannot read.
    """
    response = parse_response(session.stdout)
    if response.is_failure:
        raise ProtocolError(response.message, response.type)
    if response.is_warning:
        logger.warning("Remote warning during %s: %s", step, response.message)
    return response


def download_preserve(
    session: Session,
    writer: BinaryIO,
    pass_thru: Optional[PassThru] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> FileInfos:
    """Receive one file from a running ``scp -f -p`` into *writer*.

    Returns the header merged with the preceding timestamp line.

    Raises:
        ProtocolError: The peer sent a failure response.
        FormatError: The timestamp or header line could not be parsed.
        TransportError: A stream failed or ended early.
    """
    ack(session.stdin)

    file_time = _read_preserve_line(session, "timestamp").parse_file_time()
    logger.debug("Times: %s", file_time)
    ack(session.stdin)

    infos = _read_preserve_line(session, "header").parse_file_infos()
    logger.debug("Header: %s", infos)
    ack(session.stdin)

    infos.update(file_time)

    _receive_body(session, writer, infos, pass_thru, on_progress)
    ack(session.stdin)
    logger.info("Downloaded %d bytes (%s) with times", infos.size, infos.filename)
    return infos
