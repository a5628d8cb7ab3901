"""
mortarbase storage layer.

Pooled DuckDB connections, transactions, authorization, stream registry,
staged ingestion, streaming export, as-of graphs and qualification.
"""

from mortarbase.storage.connection_pool import (
    ConnectionPool,
    PooledConnection,
    PoolStats,
    PoolExhaustedError,
    PoolClosedError,
)
from mortarbase.storage.transactions import TransactionManager, TransactionState
from mortarbase.storage.auth import AuthorizationGate, Permission
from mortarbase.storage.streams import StreamRegistry, registration_origin
from mortarbase.storage.readings import ReadingIngestor
from mortarbase.storage.triples import TripleIngestor
from mortarbase.storage.export import (
    ExportPipeline,
    ExportStats,
    METADATA_SCHEMA,
    DATA_SCHEMA,
    read_export,
)
from mortarbase.storage.graphs import GraphMaterializer
from mortarbase.storage.qualify import QualificationEngine
from mortarbase.storage.schema import initialize_schema

__all__ = [
    "ConnectionPool",
    "PooledConnection",
    "PoolStats",
    "PoolExhaustedError",
    "PoolClosedError",
    "TransactionManager",
    "TransactionState",
    "AuthorizationGate",
    "Permission",
    "StreamRegistry",
    "registration_origin",
    "ReadingIngestor",
    "TripleIngestor",
    "ExportPipeline",
    "ExportStats",
    "METADATA_SCHEMA",
    "DATA_SCHEMA",
    "read_export",
    "GraphMaterializer",
    "QualificationEngine",
    "initialize_schema",
]
