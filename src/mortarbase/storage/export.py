"""
Streaming export of readings.

An export is one compressed byte stream holding two Arrow IPC streams:

    [metadata IPC stream: one batch of (id, brick_class, brick_uri, units, name)]
    [data IPC stream: >= 1 batches of (time, value, label)]

Both IPC writers sit on top of the same compression stream wrapping the
caller's sink; the IPC writers are closed before the compressor, and the
caller's sink is left open. Data rows are pulled from DuckDB as Arrow
record batches and re-framed so that each data batch holds exactly
``flush_rows`` rows, except the final one which holds the remainder
(possibly zero rows).

The read path performs no authorization check.
"""

from __future__ import annotations

import gzip
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Generator, Optional, Union

import lz4.frame
import pyarrow as pa

from mortarbase.config import SUPPORTED_CODECS
from mortarbase.context import OperationContext
from mortarbase.errors import ValidationError
from mortarbase.models import Query
from mortarbase.reasoner import ReasonerClient
from mortarbase.storage.transactions import TransactionManager

logger = logging.getLogger(__name__)

METADATA_SCHEMA = pa.schema([
    pa.field("id", pa.int64()),
    pa.field("brick_class", pa.string()),
    pa.field("brick_uri", pa.string()),
    pa.field("units", pa.string()),
    pa.field("name", pa.string()),
])

DATA_SCHEMA = pa.schema([
    pa.field("time", pa.timestamp("ns")),
    pa.field("value", pa.float64()),
    pa.field("label", pa.string()),
])

DEFAULT_FLUSH_ROWS = 2_000_000
MAX_FETCH_ROWS = 1_000_000

_LABEL_SQL = "COALESCE(NULLIF(brick_uri, ''), name)"

METADATA_SQL = """
SELECT DISTINCT id, brick_class, brick_uri, units, name
FROM streams
WHERE list_contains(CAST(? AS BIGINT[]), id)
ORDER BY id
"""

DATA_SQL = f"""
SELECT time, value, {_LABEL_SQL} AS label
FROM unified
WHERE list_contains(CAST(? AS BIGINT[]), stream_id)
  AND time >= ? AND time <= ?
ORDER BY time, stream_id
"""

AGGREGATED_SQL = """
SELECT bucket AS time, agg_value AS value, label FROM (
    SELECT time_bucket({interval}, time) AS bucket,
           stream_id,
           {label} AS label,
           {agg} AS agg_value
    FROM unified
    WHERE list_contains(CAST(? AS BIGINT[]), stream_id)
      AND time >= ? AND time <= ?
    GROUP BY bucket, stream_id, label
) AS agg
ORDER BY bucket, stream_id
"""


@dataclass
class ExportStats:
    """Summary of one export call."""
    ids: list[int] = field(default_factory=list)
    metadata_rows: int = 0
    data_rows: int = 0
    data_frames: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "ids": self.ids,
            "metadata_rows": self.metadata_rows,
            "data_rows": self.data_rows,
            "data_frames": self.data_frames,
        }


@contextmanager
def open_compressor(sink: BinaryIO, codec: str) -> Generator[BinaryIO, None, None]:
    """Wrap ``sink`` in a compression stream; closing it leaves ``sink`` open."""
    if codec == "lz4":
        stream = lz4.frame.LZ4FrameFile(sink, mode="wb")
    elif codec == "gzip":
        stream = gzip.GzipFile(fileobj=sink, mode="wb")
    else:
        raise ValidationError(f"Unsupported export codec {codec!r}; expected one of {SUPPORTED_CODECS}")
    try:
        yield stream
    finally:
        stream.close()


def decompress(data: bytes, codec: str) -> bytes:
    if codec == "lz4":
        return lz4.frame.decompress(data)
    if codec == "gzip":
        return gzip.decompress(data)
    raise ValidationError(f"Unsupported export codec {codec!r}; expected one of {SUPPORTED_CODECS}")


def read_export(
    stream: Union[bytes, bytearray, BinaryIO], codec: str = "lz4"
) -> tuple[pa.Table, list[pa.RecordBatch]]:
    """
    Decode an export into its metadata table and data batches.

    Decompresses once, then reads the two consecutive IPC streams.
    """
    data = bytes(stream) if isinstance(stream, (bytes, bytearray)) else stream.read()
    buf = pa.BufferReader(decompress(data, codec))
    metadata = pa.ipc.open_stream(buf).read_all()
    batches = list(pa.ipc.open_stream(buf))
    return metadata, batches


def _empty_batch(schema: pa.Schema) -> pa.RecordBatch:
    return pa.RecordBatch.from_pylist([], schema=schema)


def _write_table(writer, table: pa.Table, schema: pa.Schema) -> None:
    """Write ``table`` as exactly one batch (an empty batch if it has no rows)."""
    table = table.cast(schema).combine_chunks()
    if table.num_rows == 0:
        writer.write_batch(_empty_batch(schema))
        return
    for batch in table.to_batches():
        writer.write_batch(batch)


class ExportPipeline:
    """Resolves streams, then writes the metadata frame and data frames."""

    def __init__(
        self,
        txns: TransactionManager,
        reasoner: ReasonerClient,
        flush_rows: int = DEFAULT_FLUSH_ROWS,
        codec: str = "lz4",
    ):
        if codec not in SUPPORTED_CODECS:
            raise ValidationError(f"Unsupported export codec {codec!r}; expected one of {SUPPORTED_CODECS}")
        self._txns = txns
        self._reasoner = reasoner
        self.flush_rows = flush_rows
        self.codec = codec

    # =========================================================================
    # Id resolution
    # =========================================================================

    def resolve_ids(self, ctx: OperationContext, query: Query) -> list[int]:
        """
        Resolve the stream ids selected by ``query``.

        Priority: SPARQL text, then explicit URIs, then explicit ids. The
        reasoner call completes before any connection is acquired.
        """
        if query.sparql:
            results = self._reasoner.query(ctx, query.graph, query.sparql)
            uris = results.uris()
            ctx.logger.debug(f"SPARQL resolved {len(uris)} URIs in graph {query.graph}")
            return self._ids_for_uris(ctx, uris, query.sources)
        if query.uris:
            return self._ids_for_uris(ctx, list(query.uris), query.sources)
        return [int(i) for i in query.ids]

    def _ids_for_uris(self, ctx: OperationContext, uris: list[str], sources: list[str]) -> list[int]:
        if not uris:
            return []
        sql = (
            "SELECT DISTINCT id FROM streams "
            "WHERE (list_contains(CAST(? AS VARCHAR[]), name) "
            "OR list_contains(CAST(? AS VARCHAR[]), brick_uri))"
        )
        params: list = [uris, uris]
        if sources:
            sql += " AND list_contains(CAST(? AS VARCHAR[]), source)"
            params.append(list(sources))
        sql += " ORDER BY id"
        with self._txns.connection(ctx) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [r[0] for r in rows]

    # =========================================================================
    # Export
    # =========================================================================

    def export(self, ctx: OperationContext, query: Query, sink: BinaryIO) -> ExportStats:
        """Write the export for ``query`` to ``sink``."""
        log = ctx.logger
        stats = ExportStats(ids=self.resolve_ids(ctx, query))
        log.info(f"Export {len(stats.ids)} streams from {query.start} to {query.end}")

        with self._txns.connection(ctx) as conn:
            with open_compressor(sink, self.codec) as compressed:
                self._write_metadata(ctx, conn, stats, compressed)
                self._write_data(ctx, conn, query, stats, compressed)

        log.info(
            f"Exported {stats.data_rows} rows in {stats.data_frames} frames "
            f"for {stats.metadata_rows} streams"
        )
        return stats

    def _write_metadata(self, ctx: OperationContext, conn, stats: ExportStats, out: BinaryIO) -> None:
        if stats.ids:
            table = conn.execute(METADATA_SQL, [stats.ids]).to_arrow_reader().read_all()
        else:
            table = METADATA_SCHEMA.empty_table()
        ctx.check()
        writer = pa.ipc.new_stream(out, METADATA_SCHEMA)
        try:
            _write_table(writer, table, METADATA_SCHEMA)
        finally:
            writer.close()
        stats.metadata_rows = table.num_rows

    def _data_sql(self, query: Query) -> str:
        if query.aggregation is None:
            return DATA_SQL
        agg = query.aggregation
        return AGGREGATED_SQL.format(
            interval=agg.interval_sql,
            label=_LABEL_SQL,
            agg=agg.func.to_sql("value"),
        )

    def _write_data(
        self, ctx: OperationContext, conn, query: Query, stats: ExportStats, out: BinaryIO
    ) -> None:
        flush_rows = self.flush_rows
        writer = pa.ipc.new_stream(out, DATA_SCHEMA)
        try:
            if not stats.ids:
                writer.write_batch(_empty_batch(DATA_SCHEMA))
                stats.data_frames = 1
                return

            reader = conn.execute(
                self._data_sql(query), [stats.ids, query.start, query.end]
            ).to_arrow_reader(min(flush_rows, MAX_FETCH_ROWS))
            source_schema = reader.schema
            pending: list[pa.RecordBatch] = []
            pending_rows = 0

            for batch in reader:
                ctx.check()
                pending.append(batch)
                pending_rows += batch.num_rows
                if pending_rows < flush_rows:
                    continue
                table = pa.Table.from_batches(pending, schema=source_schema)
                while table.num_rows >= flush_rows:
                    _write_table(writer, table.slice(0, flush_rows), DATA_SCHEMA)
                    stats.data_rows += flush_rows
                    stats.data_frames += 1
                    ctx.logger.debug(f"Flushed data frame {stats.data_frames}")
                    table = table.slice(flush_rows)
                pending = table.to_batches()
                pending_rows = table.num_rows

            remainder = pa.Table.from_batches(pending, schema=source_schema)
            _write_table(writer, remainder, DATA_SCHEMA)
            stats.data_rows += remainder.num_rows
            stats.data_frames += 1
        finally:
            writer.close()
