"""Byte-level progress instrumentation for payload streams.

The decorators here sit between the transfer engine and a payload stream.
They count bytes as they pass and report ``transferred / total`` to a
callback.  Bytes are never buffered, reordered or dropped.

A :class:`ProgressTracker` belongs to exactly one transfer call; nothing in
this module is shared between transfers.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO, Callable, Optional

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

# A reader factory ``(reader, total) -> reader`` used to observe the payload
PassThru = Callable[[BinaryIO, int], BinaryIO]


@dataclass
class ProgressTracker:
    """Running byte count for one transfer."""

    total: Optional[int]
    on_progress: Optional[ProgressCallback] = None
    transferred: int = 0

    @property
    def fraction(self) -> float | None:
        """Fraction transferred, or None when the total is unknown or zero."""
        if not self.total or self.total <= 0:
            return None
        return self.transferred / self.total

    def credit(self, count: int) -> None:
        """Add *count* bytes and notify the callback."""
        if count <= 0:
            return
        self.transferred += count
        fraction = self.fraction
        if fraction is None or self.on_progress is None:
            return
        try:
            self.on_progress(fraction)
        except Exception:
            logger.exception("Exception in on_progress callback")


class ProgressReader:
    """Read-side decorator that credits every chunk returned by ``read``."""

    def __init__(self, stream: BinaryIO, tracker: ProgressTracker) -> None:
        self._stream = stream
        self.tracker = tracker

    def read(self, size: int = -1) -> bytes:
        data = self._stream.read(size)
        self.tracker.credit(len(data))
        return data

    def __getattr__(self, name: str):
        return getattr(self._stream, name)


class ProgressWriter:
    """Write-side decorator that credits every chunk accepted by ``write``."""

    def __init__(self, stream: BinaryIO, tracker: ProgressTracker) -> None:
        self._stream = stream
        self.tracker = tracker

    def write(self, data: bytes) -> int:
        written = self._stream.write(data)
        # Raw streams may report a short write; buffered ones return None
        self.tracker.credit(len(data) if written is None else written)
        return written

    def __getattr__(self, name: str):
        return getattr(self._stream, name)


def progress_pass_thru(on_progress: ProgressCallback) -> PassThru:
    """Return a :data:`PassThru` factory reporting fractions to *on_progress*."""

    def _wrap(reader: BinaryIO, total: int) -> BinaryIO:
        return ProgressReader(reader, ProgressTracker(total=total, on_progress=on_progress))

    return _wrap
