"""
MortarDatabase: the data-access facade.

Composes the pooled DuckDB store, the authorization gate, the stream
registry, both ingestion pipelines, the export pipeline, the graph
materializer and the qualification engine behind one object. Every public
operation runs under a child context scoped to its call category timeout.

Example:
    db = MortarDatabase.connect_with_retry(Config())
    ctx = OperationContext(apikey="secret")
    db.register_stream(ctx, Stream(source="bldg1", name="temp"))
"""

from __future__ import annotations

import logging
import time
from typing import Any, BinaryIO, Callable, Iterable, Optional

import duckdb
import httpx

from mortarbase.config import Config, check_config
from mortarbase.context import OperationContext
from mortarbase.errors import ConfigError
from mortarbase.models import Dataset, ModelRequest, Query, Stream, Triple, TripleDataset
from mortarbase.reasoner import ReasonerClient, SparqlResults
from mortarbase.storage.auth import AuthorizationGate, Permission
from mortarbase.storage.connection_pool import ConnectionPool
from mortarbase.storage.export import ExportPipeline, ExportStats
from mortarbase.storage.graphs import GraphMaterializer
from mortarbase.storage.qualify import QualificationEngine
from mortarbase.storage.readings import ReadingIngestor
from mortarbase.storage.schema import initialize_schema
from mortarbase.storage.streams import StreamRegistry
from mortarbase.storage.transactions import TransactionManager
from mortarbase.storage.triples import TripleIngestor

logger = logging.getLogger(__name__)


class MortarDatabase:
    """
    Hybrid time-series and metadata store.

    Use ``connect_with_retry`` (startup) or ``from_config`` rather than the
    constructor, which expects an already open root connection.
    """

    def __init__(
        self,
        root: duckdb.DuckDBPyConnection,
        config: Optional[Config] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config or Config()
        check_config(self.config)
        cfg = self.config

        self._root = root
        initialize_schema(root)

        self._pool = ConnectionPool(
            root.cursor,
            max_size=cfg.database.max_connections,
            timeout=cfg.database.pool_timeout,
            max_idle_time=cfg.database.max_conn_idle_time,
            max_lifetime=cfg.database.max_conn_lifetime,
        )
        self._txns = TransactionManager(self._pool)
        self._reasoner = ReasonerClient(
            cfg.reasoner.address,
            default_timeout=cfg.timeouts.data_read,
            transport=transport,
        )

        self._gate = AuthorizationGate(self._txns)
        self._streams = StreamRegistry(self._txns, self._gate)
        self._readings = ReadingIngestor(self._txns, self._gate, cfg.staging_chunk_rows)
        self._triples = TripleIngestor(self._txns, self._gate, cfg.staging_chunk_rows)
        self._export = ExportPipeline(
            self._txns, self._reasoner,
            flush_rows=cfg.export.flush_rows,
            codec=cfg.export.codec,
        )
        self._graphs = GraphMaterializer(self._txns)
        self._qualify = QualificationEngine(
            self._reasoner, self._triples.graphs, workers=cfg.qualify_workers,
        )
        self._closed = False
        logger.info(f"Opened database {cfg.database.path}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @classmethod
    def from_config(
        cls, config: Config, transport: Optional[httpx.BaseTransport] = None
    ) -> "MortarDatabase":
        """Open the configured database once, without retrying."""
        check_config(config)
        return cls(duckdb.connect(config.database.path), config, transport=transport)

    @classmethod
    def connect_with_retry(
        cls,
        config: Config,
        transport: Optional[httpx.BaseTransport] = None,
        max_attempts: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "MortarDatabase":
        """
        Open the configured database, retrying with a fixed backoff.

        Retries forever unless ``max_attempts`` is given. Only used at
        startup; no other operation retries.
        """
        check_config(config)
        backoff = config.database.connect_retry_seconds
        attempt = 0
        while True:
            attempt += 1
            try:
                root = duckdb.connect(config.database.path)
                break
            except duckdb.Error as e:
                if max_attempts is not None and attempt >= max_attempts:
                    raise ConfigError(
                        f"Could not open database {config.database.path} "
                        f"after {attempt} attempts: {e}"
                    ) from e
                logger.error(f"Failed to connect to database ({e}), retrying in {backoff}s")
                sleep(backoff)
        return cls(root, config, transport=transport)

    def close(self) -> None:
        """Close pooled connections and the root connection."""
        if self._closed:
            return
        self._closed = True
        self._pool.close()
        self._root.close()
        logger.info(f"Closed database {self.config.database.path}")

    def __enter__(self) -> "MortarDatabase":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def reasoner(self) -> ReasonerClient:
        return self._reasoner

    def run_in_transaction(self, ctx: OperationContext, work: Callable[[Any], Any]) -> Any:
        return self._txns.run_in_transaction(ctx, work)

    # =========================================================================
    # Authorization
    # =========================================================================

    def check_authorized(self, ctx: OperationContext, permission, source: str) -> bool:
        with ctx.scope(self.config.timeouts.registry) as op:
            return self._gate.check_authorized(op, permission, source)

    def grant(self, ctx: OperationContext, apikey: str, source: str, permission=Permission.WRITE) -> None:
        with ctx.scope(self.config.timeouts.registry) as op:
            self._gate.grant(op, apikey, permission, source)

    def revoke(self, ctx: OperationContext, apikey: str, source: str, permission=Permission.WRITE) -> None:
        with ctx.scope(self.config.timeouts.registry) as op:
            self._gate.revoke(op, apikey, permission, source)

    # =========================================================================
    # Streams and ingestion
    # =========================================================================

    def register_stream(self, ctx: OperationContext, stream: Stream) -> int:
        with ctx.scope(self.config.timeouts.registry) as op:
            return self._streams.register_stream(op, stream)

    def get_stream(self, ctx: OperationContext, source: str, name: str) -> Stream:
        with ctx.scope(self.config.timeouts.registry) as op:
            return self._streams.get_stream(op, source, name)

    def list_streams(self, ctx: OperationContext, source: Optional[str] = None) -> list[Stream]:
        with ctx.scope(self.config.timeouts.registry) as op:
            return self._streams.list_streams(op, source)

    def insert_readings(self, ctx: OperationContext, dataset: Dataset) -> int:
        with ctx.scope(self.config.timeouts.data_write) as op:
            return self._readings.insert_readings(op, dataset)

    def add_triples(self, ctx: OperationContext, dataset: TripleDataset) -> int:
        with ctx.scope(self.config.timeouts.data_write) as op:
            return self._triples.add_triples(op, dataset)

    def graphs(self, ctx: OperationContext) -> list[str]:
        with ctx.scope(self.config.timeouts.data_read) as op:
            return self._triples.graphs(op)

    # =========================================================================
    # Reads
    # =========================================================================

    def export(self, ctx: OperationContext, query: Query, sink: BinaryIO) -> ExportStats:
        """Stream the export for ``query`` into ``sink`` (no authorization check)."""
        with ctx.scope(self.config.timeouts.data_read) as op:
            return self._export.export(op, query, sink)

    def resolve_ids(self, ctx: OperationContext, query: Query) -> list[int]:
        with ctx.scope(self.config.timeouts.data_read) as op:
            return self._export.resolve_ids(op, query)

    def query_sparql(self, ctx: OperationContext, graph: Optional[str], query: str) -> SparqlResults:
        with ctx.scope(self.config.timeouts.data_read) as op:
            return self._reasoner.query(op, graph, query)

    def query_sparql_writer(
        self, ctx: OperationContext, graph: Optional[str], query: str, writer: BinaryIO
    ) -> int:
        with ctx.scope(self.config.timeouts.data_read) as op:
            return self._reasoner.query_raw(op, graph, query, writer)

    def as_of(self, ctx: OperationContext, request: ModelRequest) -> list[Triple]:
        with ctx.scope(self.config.timeouts.data_read) as op:
            return self._graphs.as_of(op, request)

    def get_graph(
        self, ctx: OperationContext, request: ModelRequest, writer: BinaryIO, syntax: str = "turtle"
    ) -> int:
        with ctx.scope(self.config.timeouts.data_read) as op:
            return self._graphs.write_graph(op, request, writer, syntax)

    def qualify(self, ctx: OperationContext, queries: Iterable[str]) -> dict[str, list[Optional[int]]]:
        with ctx.scope(self.config.timeouts.data_read) as op:
            return self._qualify.qualify(op, list(queries))
