"""
Operation context with identity, deadline and cancellation.

Provides:
- The caller's identity (an opaque API key)
- Cancellation tokens that propagate from parent to children
- Deadlines derived per call category (timeouts only ever shrink)
- A logger reachable from the call
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Generator, Optional, Union

from mortarbase.errors import OperationCancelled, OperationTimeout

logger = logging.getLogger(__name__)

CANCELLED = "cancelled"
TIMEOUT = "timeout"


class CancellationToken:
    """
    Token for cooperative cancellation.

    A child token is cancelled whenever its parent is. Callbacks run once,
    on the cancelling thread, and are used to interrupt blocking work such
    as a running DuckDB statement.
    """

    def __init__(self, parent: Optional["CancellationToken"] = None):
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self._reason: Optional[str] = None
        self._parent = parent
        self._unlink: Optional[Callable[[], None]] = None
        if parent is not None:
            self._unlink = parent.add_callback(lambda: self.cancel(parent.reason))

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: Optional[str] = None) -> None:
        """Request cancellation and fire callbacks."""
        with self._lock:
            if self._cancelled.is_set():
                return
            self._reason = reason or CANCELLED
            self._cancelled.set()
            callbacks, self._callbacks = self._callbacks, []
        for cb in callbacks:
            try:
                cb()
            except Exception as e:
                logger.warning(f"Cancellation callback failed: {e}")

    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._cancelled.wait(timeout)

    def check(self) -> None:
        """Raise if cancellation was requested."""
        if self._cancelled.is_set():
            if self._reason == TIMEOUT:
                raise OperationTimeout("Operation exceeded its deadline")
            raise OperationCancelled("Operation was cancelled")

    def add_callback(self, cb: Callable[[], None]) -> Callable[[], None]:
        """
        Register a callback fired on cancellation.

        Fires immediately if already cancelled. Returns a function that
        unregisters the callback.
        """
        with self._lock:
            if not self._cancelled.is_set():
                self._callbacks.append(cb)

                def remove():
                    with self._lock:
                        if cb in self._callbacks:
                            self._callbacks.remove(cb)
                return remove
        cb()
        return lambda: None

    def detach(self) -> None:
        """Stop listening to the parent token."""
        if self._unlink is not None:
            self._unlink()
            self._unlink = None


@dataclass
class OperationContext:
    """
    Per-call execution context.

    Usage:
        ctx = OperationContext(apikey="secret")
        with ctx.scope(timeout_seconds=30) as op:
            db.register_stream(op, stream)
    """
    apikey: Optional[str] = None
    deadline: Optional[float] = None  # time.monotonic() based
    token: CancellationToken = field(default_factory=CancellationToken)
    logger: Union[logging.Logger, logging.LoggerAdapter] = logger

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline (None if unbounded)."""
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def cancel(self) -> None:
        self.token.cancel(CANCELLED)

    def is_cancelled(self) -> bool:
        return self.token.is_cancelled()

    def check(self) -> None:
        """Raise if cancelled or past the deadline."""
        self.token.check()
        if self.deadline is not None and time.monotonic() >= self.deadline:
            self.token.cancel(TIMEOUT)
            raise OperationTimeout("Operation exceeded its deadline")

    def child(self, timeout_seconds: Optional[float] = None) -> "OperationContext":
        """
        Derive a context that inherits identity and cancellation.

        The child's deadline is the earlier of the parent's deadline and
        ``timeout_seconds`` from now.
        """
        deadline = self.deadline
        if timeout_seconds is not None:
            candidate = time.monotonic() + timeout_seconds
            deadline = candidate if deadline is None else min(deadline, candidate)
        return OperationContext(
            apikey=self.apikey,
            deadline=deadline,
            token=CancellationToken(parent=self.token),
            logger=self.logger,
        )

    @contextmanager
    def scope(
        self, timeout_seconds: Optional[float] = None
    ) -> Generator["OperationContext", None, None]:
        """
        Run a block under a child context whose deadline is enforced.

        When the deadline passes the child token is cancelled with a timeout
        reason, which interrupts any registered blocking work.
        """
        op = self.child(timeout_seconds)
        timer = None
        remaining = op.remaining()
        if remaining is not None:
            timer = threading.Timer(remaining, op.token.cancel, args=(TIMEOUT,))
            timer.daemon = True
            timer.start()
        try:
            yield op
        finally:
            if timer is not None:
                timer.cancel()
            op.token.detach()


def background(apikey: Optional[str] = None) -> OperationContext:
    """A root context with no deadline."""
    return OperationContext(apikey=apikey)
