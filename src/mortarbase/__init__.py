"""
mortarbase: hybrid time-series and RDF metadata storage.

Readings live in a transactional DuckDB store; stream metadata lives in an
append-only, versioned triple log queried through an external reasoner.
"""

__version__ = "0.1.0"

from mortarbase.config import Config, load_config
from mortarbase.context import OperationContext, background
from mortarbase.database import MortarDatabase
from mortarbase.errors import (
    AuthorizationError,
    ConfigError,
    MissingIdentityError,
    MortarError,
    NotFoundError,
    OperationCancelled,
    OperationTimeout,
    PartialFailure,
    RollbackError,
    TransactionError,
    UpstreamError,
    ValidationError,
)
from mortarbase.models import (
    Aggregation,
    AggregationFunc,
    Dataset,
    ModelRequest,
    Query,
    Reading,
    Stream,
    Triple,
    TripleDataset,
)
from mortarbase.reasoner import ReasonerClient, SparqlResults
from mortarbase.storage.export import read_export

__all__ = [
    "MortarDatabase",
    "Config",
    "load_config",
    "OperationContext",
    "background",
    # Models
    "Stream",
    "Reading",
    "Dataset",
    "Triple",
    "TripleDataset",
    "Aggregation",
    "AggregationFunc",
    "Query",
    "ModelRequest",
    # Reasoner
    "ReasonerClient",
    "SparqlResults",
    "read_export",
    # Errors
    "MortarError",
    "ConfigError",
    "ValidationError",
    "AuthorizationError",
    "MissingIdentityError",
    "NotFoundError",
    "TransactionError",
    "RollbackError",
    "UpstreamError",
    "OperationCancelled",
    "OperationTimeout",
    "PartialFailure",
]
