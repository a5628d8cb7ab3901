"""
Reading ingestion pipeline.

Bulk historical backfill through a staged copy and merge:
1. validate and authorize
2. resolve the stream id (the stream must already be registered)
3. copy the lazy reading sequence into the transaction-scoped staging table
4. upsert staged rows into ``readings`` (last write wins)
5. drop the staging table

Any failure aborts the whole batch.
"""

from __future__ import annotations

import logging

from mortarbase.context import OperationContext
from mortarbase.errors import NotFoundError, ValidationError
from mortarbase.models import Dataset, check_dataset
from mortarbase.storage.auth import AuthorizationGate, Permission
from mortarbase.storage.staging import (
    DEFAULT_CHUNK_ROWS,
    READINGS_STAGING,
    copy_into_staging,
    create_staging,
    drop_staging,
)
from mortarbase.storage.transactions import TransactionManager

logger = logging.getLogger(__name__)

# Within one batch the last row for a (time, stream) key wins.
MERGE_READINGS_SQL = f"""
INSERT INTO readings (time, stream_id, value)
SELECT time, stream_id, value FROM (
    SELECT time, stream_id, value FROM {READINGS_STAGING.name}
    QUALIFY row_number() OVER (PARTITION BY time, stream_id ORDER BY seq DESC) = 1
) AS latest
ON CONFLICT (time, stream_id) DO UPDATE SET value = EXCLUDED.value
"""


class ReadingIngestor:
    """Loads reading datasets into the time-series table."""

    def __init__(
        self,
        txns: TransactionManager,
        gate: AuthorizationGate,
        chunk_rows: int = DEFAULT_CHUNK_ROWS,
    ):
        self._txns = txns
        self._gate = gate
        self._chunk_rows = chunk_rows

    def insert_readings(self, ctx: OperationContext, ds: Dataset) -> int:
        """Ingest ``ds`` atomically and return the number of rows staged."""
        log = ctx.logger
        try:
            check_dataset(ds)
        except ValidationError as e:
            raise ValidationError(f"Cannot handle invalid dataset: {e}") from e

        self._gate.require_authorized(ctx, Permission.WRITE, ds.source)

        def work(conn) -> int:
            row = conn.execute(
                "SELECT id FROM streams WHERE source = ? AND name = ?",
                [ds.source, ds.name],
            ).fetchone()
            if row is None:
                raise NotFoundError(f"No such stream (source: {ds.source}, name: {ds.name})")
            stream_id = row[0]

            rows = (
                (t, stream_id, v, seq)
                for seq, (t, v) in enumerate(ds.rows())
            )
            create_staging(conn, READINGS_STAGING)
            num = copy_into_staging(
                conn, READINGS_STAGING, rows, chunk_rows=self._chunk_rows, ctx=ctx
            )
            conn.execute(MERGE_READINGS_SQL)
            drop_staging(conn, READINGS_STAGING)
            return num

        num = self._txns.run_in_transaction(ctx, work)
        log.info(f"Inserted {num:5d} readings: {ds}")
        return num
