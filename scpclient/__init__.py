"""scpclient — single-file SCP transfers over an SSH command channel."""

from __future__ import annotations

from scpclient.client import Client, Configurer
from scpclient.errors import (
    CancellationError,
    DeadlineExceeded,
    FormatError,
    ProcessError,
    ProtocolError,
    ScpError,
    TransportError,
)
from scpclient.harness import CancelToken
from scpclient.protocol import FileInfos, FileTime, Response, ResponseType

__all__ = [
    "CancelToken",
    "CancellationError",
    "Client",
    "Configurer",
    "DeadlineExceeded",
    "FileInfos",
    "FileTime",
    "FormatError",
    "ProcessError",
    "ProtocolError",
    "Response",
    "ResponseType",
    "ScpError",
    "TransportError",
]
