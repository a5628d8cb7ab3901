"""
Transaction-scoped staging tables for bulk ingestion.

Rows are pulled from a lazy iterable in bounded chunks, each chunk is built
into a Polars DataFrame and appended to a connection-local temporary table
through Arrow. The caller merges the staged rows into the durable table and
drops the staging table inside the same transaction, so a rollback leaves
nothing behind.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import islice
from typing import TYPE_CHECKING, Iterable, Iterator, Optional

import polars as pl

if TYPE_CHECKING:
    from mortarbase.context import OperationContext

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_ROWS = 100_000


@dataclass(frozen=True)
class StagingTable:
    """Shape of a staging table: SQL column types plus the matching Polars schema."""
    name: str
    columns: tuple[tuple[str, str, pl.DataType], ...]

    @property
    def column_names(self) -> list[str]:
        return [c[0] for c in self.columns]

    @property
    def polars_schema(self) -> dict[str, pl.DataType]:
        return {name: dtype for name, _, dtype in self.columns}

    def create_sql(self) -> str:
        cols = ", ".join(f"{name} {sql_type}" for name, sql_type, _ in self.columns)
        return f"CREATE TEMP TABLE {self.name} ({cols})"


READINGS_STAGING = StagingTable(
    name="data_temp",
    columns=(
        ("time", "TIMESTAMP", pl.Datetime("us")),
        ("stream_id", "BIGINT", pl.Int64),
        ("value", "DOUBLE", pl.Float64),
        ("seq", "BIGINT", pl.Int64),
    ),
)

TRIPLES_STAGING = StagingTable(
    name="triple_temp",
    columns=(
        ("source", "VARCHAR", pl.Utf8),
        ("origin", "VARCHAR", pl.Utf8),
        ("time", "TIMESTAMP", pl.Datetime("us")),
        ("s", "VARCHAR", pl.Utf8),
        ("p", "VARCHAR", pl.Utf8),
        ("o", "VARCHAR", pl.Utf8),
    ),
)


def _chunks(rows: Iterable[tuple], size: int) -> Iterator[list[tuple]]:
    it = iter(rows)
    while True:
        chunk = list(islice(it, size))
        if not chunk:
            return
        yield chunk


def create_staging(conn, table: StagingTable) -> None:
    conn.execute(table.create_sql())


def drop_staging(conn, table: StagingTable) -> None:
    conn.execute(f"DROP TABLE {table.name}")


def copy_into_staging(
    conn,
    table: StagingTable,
    rows: Iterable[tuple],
    chunk_rows: int = DEFAULT_CHUNK_ROWS,
    ctx: Optional["OperationContext"] = None,
) -> int:
    """
    Bulk-append ``rows`` into an existing staging table.

    Consumes ``rows`` exactly once, holding at most ``chunk_rows`` rows in
    memory. Returns the number of rows staged.
    """
    view = f"{table.name}_chunk"
    cols = ", ".join(table.column_names)
    total = 0
    for chunk in _chunks(rows, chunk_rows):
        if ctx is not None:
            ctx.check()
        df = pl.DataFrame(chunk, schema=table.polars_schema, orient="row")
        conn.register(view, df.to_arrow())
        try:
            conn.execute(f"INSERT INTO {table.name} ({cols}) SELECT {cols} FROM {view}")
        finally:
            conn.unregister(view)
        total += len(chunk)
        logger.debug(f"Staged {total} rows into {table.name}")
    return total
