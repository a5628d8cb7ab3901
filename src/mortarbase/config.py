"""
Configuration for mortarbase.

Provides:
- Database (DuckDB path and pool limits)
- Reasoner endpoint address
- Per-category operation timeouts
- Export and qualification tuning

Configuration is injected by the embedding process; load_config() reads
YAML or JSON files into the same dataclasses.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Union

import yaml

from mortarbase.errors import ConfigError

logger = logging.getLogger(__name__)

SUPPORTED_CODECS = ("lz4", "gzip")


@dataclass
class DatabaseConfig:
    """Relational store configuration."""
    path: str = ":memory:"
    max_connections: int = 50
    max_conn_idle_time: float = 15 * 60.0
    max_conn_lifetime: float = 15 * 60.0
    pool_timeout: float = 30.0
    connect_retry_seconds: float = 5.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "max_connections": self.max_connections,
            "max_conn_idle_time": self.max_conn_idle_time,
            "max_conn_lifetime": self.max_conn_lifetime,
            "pool_timeout": self.pool_timeout,
            "connect_retry_seconds": self.connect_retry_seconds,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        return cls(
            path=data.get("path", ":memory:"),
            max_connections=data.get("max_connections", 50),
            max_conn_idle_time=data.get("max_conn_idle_time", 15 * 60.0),
            max_conn_lifetime=data.get("max_conn_lifetime", 15 * 60.0),
            pool_timeout=data.get("pool_timeout", 30.0),
            connect_retry_seconds=data.get("connect_retry_seconds", 5.0),
        )


@dataclass
class ReasonerConfig:
    """Location of the external reasoning service."""
    address: str = "localhost:3030"

    def to_dict(self) -> Dict[str, Any]:
        return {"address": self.address}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReasonerConfig":
        return cls(address=data.get("address", "localhost:3030"))


@dataclass
class TimeoutConfig:
    """Operation-scoped timeouts in seconds, by call category."""
    data_read: float = 300.0
    data_write: float = 300.0
    registry: float = 30.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data_read": self.data_read,
            "data_write": self.data_write,
            "registry": self.registry,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TimeoutConfig":
        return cls(
            data_read=data.get("data_read", 300.0),
            data_write=data.get("data_write", 300.0),
            registry=data.get("registry", 30.0),
        )


@dataclass
class ExportConfig:
    """Export framing and compression."""
    flush_rows: int = 2_000_000
    codec: str = "lz4"

    def to_dict(self) -> Dict[str, Any]:
        return {"flush_rows": self.flush_rows, "codec": self.codec}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportConfig":
        return cls(
            flush_rows=data.get("flush_rows", 2_000_000),
            codec=data.get("codec", "lz4"),
        )


@dataclass
class Config:
    """Top-level configuration."""
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    reasoner: ReasonerConfig = field(default_factory=ReasonerConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    qualify_workers: int = 4
    staging_chunk_rows: int = 100_000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "database": self.database.to_dict(),
            "reasoner": self.reasoner.to_dict(),
            "timeouts": self.timeouts.to_dict(),
            "export": self.export.to_dict(),
            "qualify_workers": self.qualify_workers,
            "staging_chunk_rows": self.staging_chunk_rows,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        return cls(
            database=DatabaseConfig.from_dict(data.get("database", {})),
            reasoner=ReasonerConfig.from_dict(data.get("reasoner", {})),
            timeouts=TimeoutConfig.from_dict(data.get("timeouts", {})),
            export=ExportConfig.from_dict(data.get("export", {})),
            qualify_workers=data.get("qualify_workers", 4),
            staging_chunk_rows=data.get("staging_chunk_rows", 100_000),
        )


def check_config(cfg: Config) -> None:
    """Validate configuration, raising ConfigError on the first problem."""
    if not cfg.database.path:
        raise ConfigError("database.path is required")
    if cfg.database.max_connections < 1:
        raise ConfigError("database.max_connections must be at least 1")
    if not cfg.reasoner.address:
        raise ConfigError("reasoner.address is required")
    for name, value in cfg.timeouts.to_dict().items():
        if value <= 0:
            raise ConfigError(f"timeouts.{name} must be positive, got {value}")
    if cfg.export.flush_rows < 1:
        raise ConfigError("export.flush_rows must be at least 1")
    if cfg.export.codec not in SUPPORTED_CODECS:
        raise ConfigError(
            f"export.codec must be one of {SUPPORTED_CODECS}, got {cfg.export.codec!r}"
        )
    if cfg.qualify_workers < 1:
        raise ConfigError("qualify_workers must be at least 1")
    if cfg.staging_chunk_rows < 1:
        raise ConfigError("staging_chunk_rows must be at least 1")


def load_config(path: Union[str, Path]) -> Config:
    """Load configuration from a YAML or JSON file."""
    path = Path(path)
    try:
        text = path.read_text()
    except OSError as e:
        raise ConfigError(f"Cannot read config file {path}: {e}") from e

    try:
        if path.suffix.lower() == ".json":
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot parse config file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    cfg = Config.from_dict(data)
    check_config(cfg)
    logger.debug(f"Loaded config from {path}")
    return cfg
