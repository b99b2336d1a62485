"""SCP control-line codec.

Translates between the bytes exchanged on the session streams and the
:class:`Response` / :class:`FileInfos` model:

- ``\\x00``                       success ack
- ``\\x01<text>\\n``              warning
- ``\\x02<text>\\n``              failure
- ``C<mode> <size> <name>\\n``    file header
- ``T<mtime> 0 <atime> 0\\n``     timestamp line (preserve mode)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import BinaryIO

import paramiko

from scpclient.errors import FormatError, ProtocolError, TransportError

logger = logging.getLogger(__name__)

MAX_LINE_SIZE = 64 * 1024

# Exceptions a session stream may raise on a broken channel
IO_ERRORS = (OSError, EOFError, paramiko.SSHException)

_ACK = b"\x00"

# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class ResponseType(Enum):
    """Classification of a control line by its leading byte."""

    OK = 0
    WARNING = 1
    ERROR = 2
    UNRECOGNIZED = -1


_STATUS_BYTES = {
    0: ResponseType.OK,
    1: ResponseType.WARNING,
    2: ResponseType.ERROR,
}


@dataclass(frozen=True)
class Response:
    """One control line read from the peer.

    For ``UNRECOGNIZED`` responses ``message`` holds the whole line, leading
    byte included, so ``C`` and ``T`` lines can be handed to the line parsers.
    """

    type: ResponseType
    message: str = ""
    code: int = 0

    @property
    def is_ok(self) -> bool:
        return self.type is ResponseType.OK

    @property
    def is_warning(self) -> bool:
        return self.type is ResponseType.WARNING

    @property
    def is_failure(self) -> bool:
        """True for a ``\\x02`` response, whatever its message."""
        return self.type is ResponseType.ERROR

    @property
    def is_standard(self) -> bool:
        """False when the leading byte is not one of the three status bytes."""
        return self.type is not ResponseType.UNRECOGNIZED

    def check(self) -> None:
        """Raise :exc:`ProtocolError` carrying the peer's text unless this is an ack.

        A warning is fatal too: the sink reports a failed ``open()`` as
        ``\\x01<text>`` and then expects the next control record, not data.
        """
        if not self.is_ok:
            raise ProtocolError(self.message, self.type)

    def parse_file_infos(self) -> FileInfos:
        """Parse this line as a ``C`` header."""
        return parse_file_infos(self.message)

    def parse_file_time(self) -> FileTime:
        """Parse this line as a ``T`` timestamp line."""
        return parse_file_time(self.message)


def _read_byte(stream: BinaryIO) -> bytes:
    try:
        return stream.read(1)
    except IO_ERRORS as exc:
        raise TransportError(f"failed to read from session: {exc}") from exc


def _read_line(stream: BinaryIO) -> bytes:
    """Read up to (not including) the next newline, one byte at a time.

    Byte-wise reads keep the payload that follows a header in the stream.
    """
    buf = bytearray()
    while True:
        char = _read_byte(stream)
        if not char:
            raise TransportError("unexpected end of stream while reading a control line")
        if char == b"\n":
            return bytes(buf)
        buf += char
        if len(buf) > MAX_LINE_SIZE:
            raise FormatError(f"control line exceeds {MAX_LINE_SIZE} bytes")


def parse_response(stream: BinaryIO) -> Response:
    """Read exactly one response from *stream*.

    Raises:
        TransportError: The stream failed or ended before a full line arrived.
        FormatError: The line is longer than :data:`MAX_LINE_SIZE`.
    """
    first = _read_byte(stream)
    if not first:
        raise TransportError("unexpected end of stream while waiting for a response")

    code = first[0]
    response_type = _STATUS_BYTES.get(code, ResponseType.UNRECOGNIZED)
    if response_type is ResponseType.OK:
        return Response(ResponseType.OK, "", code)

    line = _read_line(stream)
    if response_type is ResponseType.UNRECOGNIZED:
        line = first + line
    message = line.decode("utf-8", errors="replace")
    logger.debug("Response %s: %r", response_type.name, message)
    return Response(response_type, message, code)


def ack(writer: BinaryIO) -> None:
    """Send a single success byte to the peer."""
    try:
        writer.write(_ACK)
        writer.flush()
    except IO_ERRORS as exc:
        raise TransportError(f"failed to write to session: {exc}") from exc


# ---------------------------------------------------------------------------
# File metadata
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileTime:
    """Modification and access times from a ``T`` line."""

    mtime: int
    atime: int


@dataclass
class FileInfos:
    """Metadata for the transferred file."""

    filename: str
    permissions: int
    size: int
    mtime: int | None = None
    atime: int | None = None

    def update(self, file_time: FileTime) -> None:
        """Merge the timestamps from a preceding ``T`` line."""
        self.mtime = file_time.mtime
        self.atime = file_time.atime


def _parse_int(token: str, base: int, field: str, line: str) -> int:
    # int() accepts signs and underscores, the protocol does not
    digits = "01234567" if base == 8 else "0123456789"
    if not token or any(c not in digits for c in token):
        raise FormatError(f"invalid {field} {token!r} in {line!r}")
    return int(token, base)


def _validate_filename(name: str, line: str) -> None:
    if not name:
        raise FormatError(f"missing file name in {line!r}")
    if "/" in name or name in (".", ".."):
        raise FormatError(f"file name must not contain a path: {name!r}")


def parse_file_infos(line: str) -> FileInfos:
    """Parse ``C<mode-octal> <size-decimal> <name>``.

    The name is everything after the second space, so names containing
    spaces survive.

    Raises:
        FormatError: On a missing marker, bad mode, bad size or bad name.
    """
    line = line.rstrip("\n")
    if not line.startswith("C"):
        raise FormatError(f"expected a file header, got {line!r}")
    parts = line[1:].split(" ", 2)
    if len(parts) < 3:
        raise FormatError(f"incomplete file header {line!r}")
    mode, size, name = parts
    infos = FileInfos(
        filename=name,
        permissions=_parse_int(mode, 8, "mode", line),
        size=_parse_int(size, 10, "size", line),
    )
    _validate_filename(name, line)
    return infos


def parse_file_time(line: str) -> FileTime:
    """Parse ``T<mtime> <unused> <atime> <unused>``.

    Raises:
        FormatError: On a missing marker, wrong field count or non-integer field.
    """
    line = line.rstrip("\n")
    if not line.startswith("T"):
        raise FormatError(f"expected a timestamp line, got {line!r}")
    fields = line[1:].split(" ")
    if len(fields) != 4:
        raise FormatError(f"timestamp line needs 4 fields: {line!r}")
    mtime, _, atime, _ = (_parse_int(f, 10, "time field", line) for f in fields)
    return FileTime(mtime=mtime, atime=atime)


def format_permissions(permissions: int | str) -> str:
    """Render *permissions* as the 4-digit octal string used on the wire."""
    if isinstance(permissions, str):
        value = _parse_int(permissions, 8, "permissions", permissions)
    else:
        value = int(permissions)
    if not 0 <= value <= 0o7777:
        raise FormatError(f"permissions out of range: {permissions!r}")
    return f"{value:04o}"


def encode_file_header(permissions: int | str, size: int, filename: str) -> bytes:
    """Build the ``C`` header line sent before an upload's payload."""
    if size < 0:
        raise FormatError(f"size must be non-negative, got {size}")
    if "\n" in filename:
        raise FormatError(f"file name must not contain a newline: {filename!r}")
    _validate_filename(filename, filename)
    return f"C{format_permissions(permissions)} {size} {filename}\n".encode("utf-8")


def encode_file_time(mtime: int, atime: int) -> bytes:
    """Build the ``T`` line announcing a file's timestamps."""
    return f"T{int(mtime)} 0 {int(atime)} 0\n".encode("ascii")
