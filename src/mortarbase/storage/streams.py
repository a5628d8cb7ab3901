"""
Stream registry.

Registers stream identities keyed by (source, name) and couples every
classified stream to the knowledge graph by appending an rdf:type triple.
"""

from __future__ import annotations

import logging
from typing import Optional

from mortarbase.context import OperationContext
from mortarbase.errors import NotFoundError, ValidationError
from mortarbase.models import BRICK_POINT, RDF_TYPE, Stream, check_stream, utcnow
from mortarbase.storage.auth import AuthorizationGate, Permission
from mortarbase.storage.transactions import TransactionManager

logger = logging.getLogger(__name__)

REGISTRATION_ORIGIN = "stream_registration"

_STREAM_COLUMNS = "id, source, name, units, brick_uri, brick_class"


def registration_origin(stream: Stream) -> str:
    """Origin under which a stream's type assertion is recorded."""
    return f"{REGISTRATION_ORIGIN}:{stream.name}"


def type_triple(stream: Stream) -> Optional[tuple[str, str, str]]:
    """The rdf:type statement implied by a stream's classification, if any."""
    if not stream.brick_uri:
        return None
    o = f"<{stream.brick_class}>" if stream.brick_class else f"<{BRICK_POINT}>"
    return f"<{stream.brick_uri}>", f"<{RDF_TYPE}>", o


def _row_to_stream(row) -> Stream:
    return Stream(
        id=row[0], source=row[1], name=row[2],
        units=row[3], brick_uri=row[4], brick_class=row[5],
    )


class StreamRegistry:
    """Upserts stream identities and their classification triples."""

    def __init__(self, txns: TransactionManager, gate: AuthorizationGate):
        self._txns = txns
        self._gate = gate

    def register_stream(self, ctx: OperationContext, stream: Stream) -> int:
        """
        Register or update a stream and return its id.

        The id is assigned on first registration and never changes;
        units and classification are overwritten on re-registration.
        """
        log = ctx.logger
        try:
            check_stream(stream)
        except ValidationError as e:
            raise ValidationError(f"Cannot register invalid stream: {e}") from e

        log.info(f"Register stream {stream}")
        self._gate.require_authorized(ctx, Permission.WRITE, stream.source)

        brick_uri = stream.brick_uri or None
        brick_class = stream.brick_class or None

        def work(conn) -> int:
            conn.execute(
                """
                INSERT INTO streams (name, source, units, brick_uri, brick_class)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (source, name) DO UPDATE SET
                    units = EXCLUDED.units,
                    brick_uri = EXCLUDED.brick_uri,
                    brick_class = EXCLUDED.brick_class
                """,
                [stream.name, stream.source, stream.units, brick_uri, brick_class],
            )
            row = conn.execute(
                "SELECT id FROM streams WHERE source = ? AND name = ?",
                [stream.source, stream.name],
            ).fetchone()
            stream_id = row[0]

            triple = type_triple(stream)
            if triple is not None:
                self._append_type_triple(conn, stream, triple)
            return stream_id

        stream_id = self._txns.run_in_transaction(ctx, work)
        stream.id = stream_id
        log.info(f"Registered stream {stream} with id {stream_id}")
        return stream_id

    def _append_type_triple(self, conn, stream: Stream, triple: tuple[str, str, str]) -> None:
        """Append the type triple unless the latest batch for its origin already holds it."""
        origin = registration_origin(stream)
        s, p, o = triple
        conn.execute(
            """
            INSERT INTO triples (source, origin, time, s, p, o)
            SELECT ?, ?, ?, ?, ?, ?
            WHERE NOT EXISTS (
                SELECT 1 FROM triples t
                WHERE t.source = ? AND t.origin = ? AND t.s = ? AND t.p = ? AND t.o = ?
                  AND t.time = (SELECT MAX(time) FROM triples
                                WHERE source = ? AND origin = ?)
            )
            """,
            [
                stream.source, origin, utcnow(), s, p, o,
                stream.source, origin, s, p, o,
                stream.source, origin,
            ],
        )

    def get_stream(self, ctx: OperationContext, source: str, name: str) -> Stream:
        with self._txns.connection(ctx) as conn:
            row = conn.execute(
                f"SELECT {_STREAM_COLUMNS} FROM streams WHERE source = ? AND name = ?",
                [source, name],
            ).fetchone()
        if row is None:
            raise NotFoundError(f"No such stream (source: {source}, name: {name})")
        return _row_to_stream(row)

    def list_streams(self, ctx: OperationContext, source: Optional[str] = None) -> list[Stream]:
        sql = f"SELECT {_STREAM_COLUMNS} FROM streams"
        params: list = []
        if source is not None:
            sql += " WHERE source = ?"
            params.append(source)
        sql += " ORDER BY id"
        with self._txns.connection(ctx) as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_stream(r) for r in rows]
