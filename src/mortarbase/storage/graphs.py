"""
As-of graph materialization.

The state of a named graph at time T is, for each origin, the batch of
triples carrying that origin's latest time not after T. Nothing is
materialized in storage; every request recomputes the view.

Output is canonicalized through pyoxigraph: each stored row is parsed as an
N-Triples statement and the resulting terms are re-serialized in the
requested syntax.
"""

from __future__ import annotations

import logging
from typing import BinaryIO

import pyoxigraph
from pyoxigraph import RdfFormat, parse, serialize

from mortarbase.context import OperationContext
from mortarbase.errors import ValidationError
from mortarbase.models import ModelRequest, Triple
from mortarbase.storage.transactions import TransactionManager

logger = logging.getLogger(__name__)

SYNTAXES = {
    "turtle": RdfFormat.TURTLE,
    "ttl": RdfFormat.TURTLE,
    "ntriples": RdfFormat.N_TRIPLES,
    "nt": RdfFormat.N_TRIPLES,
}

AS_OF_SQL = """
WITH latest AS (
    SELECT origin, MAX(time) AS time
    FROM triples
    WHERE source = ? AND time <= ?
    GROUP BY origin
)
SELECT DISTINCT t.s, t.p, t.o
FROM triples t
JOIN latest l ON t.origin = l.origin AND t.time = l.time
WHERE t.source = ?
ORDER BY t.s, t.p, t.o
"""


def decode_rows(rows: list[tuple[str, str, str]]) -> list[pyoxigraph.Triple]:
    """Parse stored (s, p, o) rows into pyoxigraph triples, row by row."""
    decoded = []
    for idx, (s, p, o) in enumerate(rows):
        statement = f"{s} {p} {o} ."
        try:
            quads = list(parse(statement, RdfFormat.N_TRIPLES))
        except (SyntaxError, ValueError) as e:
            raise ValidationError(f"Cannot decode triple row {idx}: {statement!r}: {e}") from e
        if len(quads) != 1:
            raise ValidationError(f"Cannot decode triple row {idx}: {statement!r}")
        decoded.append(quads[0].triple)
    return decoded


class GraphMaterializer:
    """Computes as-of views of named graphs from the triple log."""

    def __init__(self, txns: TransactionManager):
        self._txns = txns

    def _rows(self, ctx: OperationContext, req: ModelRequest) -> list[tuple[str, str, str]]:
        with self._txns.connection(ctx) as conn:
            return conn.execute(AS_OF_SQL, [req.graph, req.timestamp, req.graph]).fetchall()

    def as_of(self, ctx: OperationContext, req: ModelRequest) -> list[Triple]:
        """The graph's triples as of ``req.timestamp``, ordered by (s, p, o)."""
        rows = self._rows(ctx, req)
        decoded = decode_rows(rows)
        return [
            Triple(str(t.subject), str(t.predicate), str(t.object))
            for t in decoded
        ]

    def write_graph(
        self,
        ctx: OperationContext,
        req: ModelRequest,
        writer: BinaryIO,
        syntax: str = "turtle",
    ) -> int:
        """
        Serialize the as-of graph to ``writer`` and return the triple count.

        Raises:
            ValidationError: unknown syntax, or a stored row that does not decode
        """
        fmt = SYNTAXES.get(syntax.lower())
        if fmt is None:
            raise ValidationError(f"Unsupported graph syntax {syntax!r}; expected one of {sorted(SYNTAXES)}")
        rows = self._rows(ctx, req)
        triples = decode_rows(rows)
        ctx.check()
        serialize(triples, writer, fmt)
        ctx.logger.info(f"Wrote {len(triples)} triples of graph {req.graph} as of {req.timestamp}")
        return len(triples)
