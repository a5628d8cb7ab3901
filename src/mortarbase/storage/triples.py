"""
Triple ingestion pipeline.

Stages a triple batch and merges it into the append-only triple log.
Reinserting a triple that is already in the log is a no-op.
"""

from __future__ import annotations

import logging

from mortarbase.context import OperationContext
from mortarbase.errors import ValidationError
from mortarbase.models import TripleDataset, check_triple_dataset
from mortarbase.storage.auth import AuthorizationGate, Permission
from mortarbase.storage.staging import (
    DEFAULT_CHUNK_ROWS,
    TRIPLES_STAGING,
    copy_into_staging,
    create_staging,
    drop_staging,
)
from mortarbase.storage.transactions import TransactionManager

logger = logging.getLogger(__name__)

MERGE_TRIPLES_SQL = f"""
INSERT INTO triples (source, origin, time, s, p, o)
SELECT DISTINCT source, origin, time, s, p, o FROM {TRIPLES_STAGING.name}
ON CONFLICT DO NOTHING
"""


class TripleIngestor:
    """Appends triple datasets to the triple log."""

    def __init__(
        self,
        txns: TransactionManager,
        gate: AuthorizationGate,
        chunk_rows: int = DEFAULT_CHUNK_ROWS,
    ):
        self._txns = txns
        self._gate = gate
        self._chunk_rows = chunk_rows

    def add_triples(self, ctx: OperationContext, ds: TripleDataset) -> int:
        """Append ``ds`` atomically and return the number of rows staged."""
        log = ctx.logger
        try:
            check_triple_dataset(ds)
        except ValidationError as e:
            raise ValidationError(f"Cannot handle invalid dataset: {e}") from e

        self._gate.require_authorized(ctx, Permission.WRITE, ds.source)

        def work(conn) -> int:
            create_staging(conn, TRIPLES_STAGING)
            num = copy_into_staging(
                conn, TRIPLES_STAGING, ds.rows(), chunk_rows=self._chunk_rows, ctx=ctx
            )
            conn.execute(MERGE_TRIPLES_SQL)
            drop_staging(conn, TRIPLES_STAGING)
            return num

        num = self._txns.run_in_transaction(ctx, work)
        log.info(f"Inserted {num:5d} triples for source {ds.source}")
        return num

    def graphs(self, ctx: OperationContext) -> list[str]:
        """Distinct named graphs present in the triple log."""
        with self._txns.connection(ctx) as conn:
            rows = conn.execute("SELECT DISTINCT source FROM triples ORDER BY source").fetchall()
        return [r[0] for r in rows]
