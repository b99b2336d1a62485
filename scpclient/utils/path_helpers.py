"""Remote path parsing and validation utilities."""

from __future__ import annotations

import logging
import re
from typing import NamedTuple

logger = logging.getLogger(__name__)

# [user@]host:path, host may be a bracketed IPv6 literal
_REMOTE_SPEC = re.compile(r"^(?:(?P<user>[^@/:]+)@)?(?P<host>\[[^\]]+\]|[^@/:\[\]]+):(?P<path>.*)$")


class RemoteSpec(NamedTuple):
    """A parsed ``[user@]host:path`` argument."""

    username: str | None
    host: str
    path: str


def human_readable_size(size_bytes: int | float) -> str:
    """Convert a byte count to a human-readable string (e.g. "4.2 MB")."""
    if size_bytes < 0:
        return "0 B"
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size_bytes < 1024.0:
            if unit == "B":
                return f"{int(size_bytes)} B"
            return f"{size_bytes:.1f} {unit}"
        size_bytes /= 1024.0
    return f"{size_bytes:.1f} PB"


def validate_remote_path(path: str) -> bool:
    """Return True if *path* can be carried in an SCP command line.

    Rejects empty paths and paths containing a null byte or a newline, which
    the remote command line and the control lines cannot represent.  Any
    further restriction (shell metacharacters, traversal) is up to the caller.
    """
    if not path:
        logger.warning("Remote path rejected — empty")
        return False
    if "\x00" in path:
        logger.warning("Remote path rejected — contains null byte: %r", path)
        return False
    if "\n" in path or "\r" in path:
        logger.warning("Remote path rejected — contains a line break: %r", path)
        return False
    return True


def parse_remote_spec(arg: str) -> RemoteSpec | None:
    """Split ``[user@]host:path`` into its parts; ``None`` for a local path.

    An empty remote path means the remote user's home directory, as with
    ``scp``; it is returned as ``"."``.
    """
    match = _REMOTE_SPEC.match(arg)
    if match is None:
        return None
    host = match.group("host")
    if host.startswith("["):
        host = host[1:-1]
    return RemoteSpec(
        username=match.group("user"),
        host=host,
        path=match.group("path") or ".",
    )
