"""
Transaction support for the relational store.

Provides run_in_transaction with:
- Atomicity: work either commits as a whole or is rolled back
- A distinct, fatal RollbackError when rollback itself fails
- Cancellation: a cancelled or expired context interrupts the connection
"""

from __future__ import annotations

import itertools
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import IntEnum, auto
from typing import Any, Callable, Generator, Optional, TypeVar

from mortarbase.context import TIMEOUT, OperationContext
from mortarbase.errors import (
    MortarError,
    OperationCancelled,
    OperationTimeout,
    RollbackError,
    TransactionError,
)
from mortarbase.storage.connection_pool import ConnectionPool, PoolClosedError, PoolExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TransactionState(IntEnum):
    """Transaction lifecycle states."""
    PENDING = auto()      # Created but not started
    ACTIVE = auto()       # In progress
    COMMITTED = auto()    # Successfully completed
    ABORTED = auto()      # Rolled back
    FAILED = auto()       # Error during commit or rollback


@dataclass
class TransactionStats:
    """Statistics for a transaction."""
    txn_id: int
    start_time: float
    end_time: Optional[float] = None
    state: TransactionState = TransactionState.PENDING

    @property
    def duration_ms(self) -> float:
        """Transaction duration in milliseconds."""
        end = self.end_time or time.monotonic()
        return (end - self.start_time) * 1000


def _cancelled_error(ctx: OperationContext, cause: BaseException) -> OperationCancelled:
    if ctx.token.reason == TIMEOUT:
        return OperationTimeout(f"Operation exceeded its deadline: {cause}")
    return OperationCancelled(f"Operation was cancelled: {cause}")


class TransactionManager:
    """
    Runs units of work inside pooled-connection transactions.

    Usage:
        txns = TransactionManager(pool)
        stream_id = txns.run_in_transaction(ctx, lambda conn: ...)
    """

    def __init__(self, pool: ConnectionPool):
        self._pool = pool
        self._ids = itertools.count(1)

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    def _acquire(self, ctx: OperationContext):
        ctx.check()
        remaining = ctx.remaining()
        try:
            return self._pool.acquire(timeout=remaining)
        except (PoolExhaustedError, PoolClosedError) as e:
            raise TransactionError(f"Could not acquire connection from pool: {e}") from e

    @contextmanager
    def connection(self, ctx: OperationContext) -> Generator[Any, None, None]:
        """
        Borrow a pooled connection outside of an explicit transaction.

        The connection is interrupted if ``ctx`` is cancelled meanwhile.
        """
        pooled = self._acquire(ctx)
        unregister = ctx.token.add_callback(pooled.raw.interrupt)
        try:
            yield pooled.raw
        except MortarError:
            raise
        except Exception as e:
            if ctx.is_cancelled():
                raise _cancelled_error(ctx, e) from e
            raise
        finally:
            unregister()
            self._pool.release(pooled)

    def run_in_transaction(
        self, ctx: OperationContext, work: Callable[[Any], T]
    ) -> T:
        """
        Execute ``work(conn)`` in a transaction.

        Commits if ``work`` returns, rolls back if it raises. Errors from the
        mortarbase taxonomy propagate unchanged after rollback; anything else
        is wrapped in TransactionError.

        Raises:
            RollbackError: if rollback fails (always fatal)
            TransactionError: on begin, execution or commit failure
        """
        stats = TransactionStats(txn_id=next(self._ids), start_time=time.monotonic())
        pooled = self._acquire(ctx)
        conn = pooled.raw
        unregister = ctx.token.add_callback(conn.interrupt)
        discard = False
        try:
            try:
                conn.begin()
            except Exception as e:
                discard = True
                raise TransactionError(f"Could not begin transaction: {e}") from e
            stats.state = TransactionState.ACTIVE

            try:
                result = work(conn)
            except BaseException as e:
                try:
                    conn.rollback()
                except Exception as rberr:
                    stats.state = TransactionState.FAILED
                    discard = True
                    logger.error(f"Transaction {stats.txn_id} could not roll back: {rberr}")
                    raise RollbackError(e, rberr) from e
                stats.state = TransactionState.ABORTED
                if isinstance(e, MortarError) or not isinstance(e, Exception):
                    raise
                if ctx.is_cancelled():
                    raise _cancelled_error(ctx, e) from e
                raise TransactionError(
                    f"Error occurred during transaction execution: {e}"
                ) from e

            try:
                conn.commit()
            except Exception as e:
                stats.state = TransactionState.FAILED
                discard = True
                if ctx.is_cancelled():
                    raise _cancelled_error(ctx, e) from e
                raise TransactionError(f"Error occurred during transaction commit: {e}") from e
            stats.state = TransactionState.COMMITTED
            return result
        finally:
            unregister()
            stats.end_time = time.monotonic()
            self._pool.release(pooled, discard=discard)
            logger.debug(
                f"Transaction {stats.txn_id} {stats.state.name} in {stats.duration_ms:.1f}ms"
            )
