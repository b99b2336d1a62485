"""Exception hierarchy for scpclient.

Every failure that ends a transfer is raised as a subclass of
:class:`ScpError` so callers can catch one type.  None of them are retried.
"""

from __future__ import annotations


class ScpError(Exception):
    """Base class for all transfer errors."""


class TransportError(ScpError):
    """Raised when reading from or writing to the session streams fails."""


class ProtocolError(ScpError):
    """Raised when the remote peer answers with a failure response.

    ``str(exc)`` is exactly the peer's message so operators see the remote
    server's own diagnostic.
    """

    def __init__(self, message: str, response_type=None) -> None:
        """Initialise with the peer message and the response type that carried it."""
        super().__init__(message)
        self.message = message
        self.response_type = response_type

    def __str__(self) -> str:
        return self.message


class FormatError(ScpError, ValueError):
    """Raised when a header or timestamp line cannot be parsed."""


class CancellationError(ScpError):
    """Raised when the caller cancelled the transfer."""


class DeadlineExceeded(CancellationError, TimeoutError):
    """Raised when the transfer deadline passed before it completed."""


class ProcessError(ScpError):
    """Raised when the remote command failed to start or exited non-zero."""

    def __init__(self, message: str, exit_status: int | None = None, stderr: str = "") -> None:
        """Initialise with the exit status and any captured stderr text."""
        super().__init__(message)
        self.exit_status = exit_status
        self.stderr = stderr
