"""
Relational schema for mortarbase.

Tables:
- streams: stream identity and Brick classification
- readings: (time, stream_id, value) time series, unique on (time, stream_id)
- triples: append-only triple log, unique on all six columns
- authorizations: (apikey, permission, source) capability grants

Views:
- unified: readings joined to their stream metadata
"""

from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1"

SCHEMA_STATEMENTS = [
    "CREATE SEQUENCE IF NOT EXISTS streams_id_seq START 1",
    """
    CREATE TABLE IF NOT EXISTS streams (
        id          BIGINT NOT NULL DEFAULT nextval('streams_id_seq'),
        name        VARCHAR NOT NULL,
        source      VARCHAR NOT NULL,
        units       VARCHAR,
        brick_uri   VARCHAR,
        brick_class VARCHAR,
        UNIQUE (source, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS readings (
        time      TIMESTAMP NOT NULL,
        stream_id BIGINT NOT NULL,
        value     DOUBLE NOT NULL,
        UNIQUE (time, stream_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS triples (
        source VARCHAR NOT NULL,
        origin VARCHAR NOT NULL,
        time   TIMESTAMP NOT NULL,
        s      VARCHAR NOT NULL,
        p      VARCHAR NOT NULL,
        o      VARCHAR NOT NULL,
        UNIQUE (source, origin, time, s, p, o)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS authorizations (
        apikey     VARCHAR NOT NULL,
        permission VARCHAR NOT NULL,
        source     VARCHAR NOT NULL
    )
    """,
    """
    CREATE OR REPLACE VIEW unified AS
    SELECT r.time, r.stream_id, r.value,
           s.name, s.source, s.units, s.brick_uri, s.brick_class
    FROM readings r
    JOIN streams s ON r.stream_id = s.id
    """,
]


def initialize_schema(conn) -> None:
    """Create tables, sequences and views if they do not exist."""
    for statement in SCHEMA_STATEMENTS:
        conn.execute(statement)
    logger.debug(f"Schema version {SCHEMA_VERSION} initialized")
