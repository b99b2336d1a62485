"""Cancellation harness supervising one transfer.

Every transfer runs two units of work in parallel:

- the protocol unit, which drives the SCP state machine over the session
  streams, and
- the process unit, which waits for the remote command to exit.

:func:`supervise` blocks until both have reported, or until the
:class:`CancelToken` is cancelled or its deadline passes.  Cancellation is
cooperative: the harness stops waiting but cannot interrupt a blocked read
or write.  The caller must close the session to unblock the threads.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from typing import Callable

from scpclient.errors import CancellationError, DeadlineExceeded

logger = logging.getLogger(__name__)

CancelCallback = Callable[["CancelToken"], None]

# ---------------------------------------------------------------------------
# CancelToken
# ---------------------------------------------------------------------------


class CancelToken:
    """Cancellation signal with an optional deadline.

    A token built with a *parent* is cancelled whenever the parent is, and
    its deadline is the earlier of the two.  Use it as a context manager (or
    call :meth:`close`) to detach a child from its parent.
    """

    def __init__(self, timeout: float | None = None, parent: CancelToken | None = None) -> None:
        """Create a token.

        Args:
            timeout: Seconds from now until the deadline; ``None`` for none.
            parent: Token whose cancellation and deadline this one inherits.
        """
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[CancelCallback] = []
        self._reason: str | None = None
        self._parent = parent

        deadline = None if timeout is None else time.monotonic() + timeout
        if parent is not None and parent.deadline is not None:
            deadline = parent.deadline if deadline is None else min(deadline, parent.deadline)
        self.deadline: float | None = deadline

        if parent is not None:
            parent.add_callback(self._on_parent_cancel)

    def __enter__(self) -> CancelToken:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Stop following the parent token."""
        if self._parent is not None:
            self._parent.remove_callback(self._on_parent_cancel)
            self._parent = None

    def with_timeout(self, timeout: float | None) -> CancelToken:
        """Return a child token that also expires after *timeout* seconds."""
        return CancelToken(timeout=timeout, parent=self)

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "transfer cancelled") -> None:
        """Cancel the token and run registered callbacks once."""
        with self._lock:
            if self._event.is_set():
                return
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()
        logger.debug("Cancel token fired: %s", reason)
        for callback in callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Exception in cancel callback")

    def _on_parent_cancel(self, parent: CancelToken) -> None:
        self.cancel(parent.reason or "transfer cancelled")

    @property
    def reason(self) -> str | None:
        return self._reason

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    @property
    def cancelled(self) -> bool:
        """True once cancelled explicitly or past the deadline."""
        return self._event.is_set() or self.expired

    def remaining(self) -> float | None:
        """Seconds left until the deadline, ``None`` when there is none."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled, the deadline, or *timeout*; return :attr:`cancelled`."""
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._event.wait(timeout)
        return self.cancelled

    def error(self) -> CancellationError:
        """Return the exception describing why the token is cancelled."""
        if self._event.is_set():
            return CancellationError(self._reason or "transfer cancelled")
        return DeadlineExceeded("transfer deadline exceeded")

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise self.error()

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------

    def add_callback(self, callback: CancelCallback) -> None:
        """Call *callback(token)* on cancellation; immediately if already cancelled."""
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback(self)

    def remove_callback(self, callback: CancelCallback) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass


# ---------------------------------------------------------------------------
# Supervision
# ---------------------------------------------------------------------------

_CANCELLED = object()


def _spawn(name: str, unit: Callable[[], None], results: queue.Queue) -> threading.Thread:
    def _run() -> None:
        error: BaseException | None = None
        try:
            unit()
        except BaseException as exc:  # noqa: BLE001  (reported to the supervisor)
            error = exc
        logger.debug("Unit %s finished%s", name, f" with {error!r}" if error else "")
        results.put((name, error))

    thread = threading.Thread(target=_run, name=name, daemon=True)
    thread.start()
    return thread


def supervise(
    protocol: Callable[[], None],
    process: Callable[[], None],
    cancel: CancelToken | None = None,
    timeout: float | None = None,
    name: str = "scp",
) -> None:
    """Run *protocol* and *process* concurrently and wait for both.

    Args:
        protocol: Drives the SCP exchange; raises on failure.
        process: Waits for the remote command to exit; raises on failure.
        cancel: Caller's cancellation token.
        timeout: Overall limit in seconds for this call; ``None`` or ``0``
            disables it.  Combined with *cancel*, whichever fires first.
        name: Prefix for the worker thread names.

    Raises:
        CancellationError: The token was cancelled or the deadline passed
            before both units finished.  The units are not joined.
        Exception: The first error reported by either unit.
    """
    parent = cancel or CancelToken()
    token = parent.with_timeout(timeout or None)

    # Two unit results plus one cancellation notice
    results: queue.Queue = queue.Queue(maxsize=3)

    def _notify(_: CancelToken) -> None:
        results.put_nowait((None, _CANCELLED))

    with token:
        token.raise_if_cancelled()
        token.add_callback(_notify)
        try:
            _spawn(f"{name}-protocol", protocol, results)
            _spawn(f"{name}-process", process, results)

            errors: list[BaseException] = []
            pending = 2
            while pending:
                try:
                    unit, error = results.get(timeout=token.remaining())
                except queue.Empty:
                    raise token.error() from None
                if error is _CANCELLED:
                    raise token.error()
                pending -= 1
                if error is not None:
                    errors.append(error)
                    logger.debug("Unit %s failed: %s", unit, error)
        finally:
            token.remove_callback(_notify)

    if errors:
        for later in errors[1:]:
            logger.debug("Discarding later transfer error: %r", later)
        raise errors[0]
