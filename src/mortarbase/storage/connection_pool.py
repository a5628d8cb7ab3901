"""
Connection pooling for thread-safe concurrent access to the relational store.

Provides connection management with:
- Bounded pool size (max concurrent connections)
- Checkout/checkin semantics
- Timeout on pool exhaustion
- Idle and lifetime eviction to recycle long-held connections
- Context manager support
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from queue import Empty, LifoQueue
from typing import Any, Callable, Generator, Optional

logger = logging.getLogger(__name__)


class PoolExhaustedError(Exception):
    """Raised when pool is exhausted and timeout expires."""
    pass


class PoolClosedError(Exception):
    """Raised when checking out from a closed pool."""
    pass


@dataclass
class PooledConnection:
    """A connection wrapper that tracks usage state."""

    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    raw: Any = None
    created_at: float = field(default_factory=time.monotonic)
    checked_out: bool = False
    checked_out_at: Optional[float] = None
    checked_out_by: Optional[int] = None  # Thread ID
    use_count: int = 0
    last_used_at: Optional[float] = None

    def mark_checked_out(self) -> None:
        """Mark connection as checked out."""
        self.checked_out = True
        self.checked_out_at = time.monotonic()
        self.checked_out_by = threading.current_thread().ident
        self.use_count += 1

    def mark_returned(self) -> None:
        """Mark connection as returned to pool."""
        self.checked_out = False
        self.last_used_at = time.monotonic()
        self.checked_out_at = None
        self.checked_out_by = None


@dataclass
class PoolStats:
    """Statistics for connection pool monitoring."""

    total_connections: int = 0
    available_connections: int = 0
    checked_out_connections: int = 0
    total_checkouts: int = 0
    total_timeouts: int = 0
    total_recycled: int = 0
    avg_wait_time_ms: float = 0.0
    max_concurrent_checkouts: int = 0


class ConnectionPool:
    """
    Thread-safe bounded pool of database connections.

    Example:
        pool = ConnectionPool(lambda: root.cursor(), max_size=10)

        with pool.connection() as conn:
            conn.execute("SELECT 1")
    """

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        max_size: int = 10,
        timeout: float = 30.0,
        max_idle_time: Optional[float] = 15 * 60.0,
        max_lifetime: Optional[float] = 15 * 60.0,
    ):
        """
        Initialize connection pool.

        Args:
            connection_factory: Callable that opens a new raw connection
            max_size: Maximum number of concurrent connections
            timeout: Seconds to wait for an available connection
            max_idle_time: Seconds a connection may sit idle before recycling (None = never)
            max_lifetime: Seconds a connection may live before recycling (None = never)
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._factory = connection_factory
        self._max_size = max_size
        self._timeout = timeout
        self._max_idle_time = max_idle_time
        self._max_lifetime = max_lifetime

        self._idle: LifoQueue[PooledConnection] = LifoQueue(maxsize=max_size)
        self._slots = threading.BoundedSemaphore(max_size)
        self._lock = threading.Lock()
        self._all_connections: dict[str, PooledConnection] = {}
        self._stats = PoolStats()
        self._total_wait_time = 0.0
        self._closed = False

    def _create_connection(self) -> PooledConnection:
        """Open a new pooled connection."""
        conn = PooledConnection(raw=self._factory())
        with self._lock:
            self._all_connections[conn.id] = conn
            self._stats.total_connections += 1
        return conn

    def _discard(self, conn: PooledConnection) -> None:
        """Close a connection and forget it."""
        with self._lock:
            if self._all_connections.pop(conn.id, None) is not None:
                self._stats.total_connections -= 1
        try:
            conn.raw.close()
        except Exception as e:
            logger.warning(f"Error closing connection {conn.id}: {e}")

    def _is_stale(self, conn: PooledConnection) -> bool:
        """Check lifetime and idle limits."""
        now = time.monotonic()
        if self._max_lifetime is not None and now - conn.created_at > self._max_lifetime:
            return True
        if (
            self._max_idle_time is not None
            and conn.last_used_at is not None
            and now - conn.last_used_at > self._max_idle_time
        ):
            return True
        return False

    def acquire(self, timeout: Optional[float] = None) -> PooledConnection:
        """
        Check out a connection, waiting up to ``timeout`` seconds.

        Raises:
            PoolExhaustedError: If no connection is available within timeout
        """
        if self._closed:
            raise PoolClosedError("Pool is closed")

        effective_timeout = timeout if timeout is not None else self._timeout
        start_time = time.monotonic()

        if not self._slots.acquire(timeout=effective_timeout):
            with self._lock:
                self._stats.total_timeouts += 1
            raise PoolExhaustedError(
                f"No connection available after {effective_timeout}s timeout"
            )

        try:
            try:
                conn = self._idle.get_nowait()
                with self._lock:
                    self._stats.available_connections -= 1
                if self._is_stale(conn):
                    logger.debug(f"Recycling connection {conn.id}")
                    self._discard(conn)
                    with self._lock:
                        self._stats.total_recycled += 1
                    conn = self._create_connection()
            except Empty:
                conn = self._create_connection()
        except Exception:
            self._slots.release()
            raise

        conn.mark_checked_out()
        wait_time = time.monotonic() - start_time
        with self._lock:
            self._stats.checked_out_connections += 1
            self._stats.total_checkouts += 1
            self._total_wait_time += wait_time * 1000
            self._stats.avg_wait_time_ms = self._total_wait_time / self._stats.total_checkouts
            self._stats.max_concurrent_checkouts = max(
                self._stats.max_concurrent_checkouts,
                self._stats.checked_out_connections,
            )
        return conn

    def release(self, conn: PooledConnection, discard: bool = False) -> None:
        """Return a connection to the pool, or close it when ``discard``."""
        conn.mark_returned()
        with self._lock:
            self._stats.checked_out_connections -= 1
        try:
            if discard or self._closed or self._is_stale(conn):
                self._discard(conn)
            else:
                self._idle.put_nowait(conn)
                with self._lock:
                    self._stats.available_connections += 1
        finally:
            self._slots.release()

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Generator[Any, None, None]:
        """
        Borrow a raw connection for the duration of the block.

        Yields:
            The raw DB-API style connection
        """
        conn = self.acquire(timeout)
        try:
            yield conn.raw
        finally:
            self.release(conn)

    def stats(self) -> PoolStats:
        """Get current pool statistics."""
        with self._lock:
            return PoolStats(
                total_connections=self._stats.total_connections,
                available_connections=self._stats.available_connections,
                checked_out_connections=self._stats.checked_out_connections,
                total_checkouts=self._stats.total_checkouts,
                total_timeouts=self._stats.total_timeouts,
                total_recycled=self._stats.total_recycled,
                avg_wait_time_ms=self._stats.avg_wait_time_ms,
                max_concurrent_checkouts=self._stats.max_concurrent_checkouts,
            )

    @property
    def max_size(self) -> int:
        return self._max_size

    def size(self) -> int:
        """Get current number of open connections."""
        with self._lock:
            return self._stats.total_connections

    def available(self) -> int:
        """Get number of idle connections."""
        with self._lock:
            return self._stats.available_connections

    def close(self) -> None:
        """Close idle connections and refuse further checkouts."""
        self._closed = True
        while True:
            try:
                conn = self._idle.get_nowait()
            except Empty:
                break
            self._discard(conn)
        with self._lock:
            self._stats.available_connections = 0

    def __enter__(self) -> "ConnectionPool":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
