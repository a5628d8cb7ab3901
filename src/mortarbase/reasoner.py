"""
Client for the external reasoning service.

The reasoner answers SPARQL over named graphs at
``POST http://{address}/query/{graph}`` in two modes:

- structured: form field ``query`` with
  ``Accept: application/sparql-results+json``; parsed into SparqlResults
- raw: the query text is the request body and the response body is
  streamed through to a caller-provided writer

Every request is bounded by the remaining budget of the operation context.
Transport failures, non-2xx answers and malformed bodies raise UpstreamError.
"""

from __future__ import annotations

import json
import logging
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Callable, Dict, List, Optional, TypeVar
from urllib.parse import quote

import httpx

from mortarbase.context import OperationContext
from mortarbase.errors import MortarError, OperationCancelled, UpstreamError
from mortarbase.models import DEFAULT_GRAPH

logger = logging.getLogger(__name__)

SPARQL_RESULTS_JSON = "application/sparql-results+json"
CANCEL_POLL_SECONDS = 0.05

T = TypeVar("T")


@dataclass
class SparqlResults:
    """Parsed SPARQL JSON results."""
    vars: List[str] = field(default_factory=list)
    bindings: List[Dict[str, Dict[str, Any]]] = field(default_factory=list)
    graph: str = DEFAULT_GRAPH
    execution_time_ms: float = 0.0

    def __len__(self) -> int:
        return len(self.bindings)

    def uris(self) -> List[str]:
        """Every URI-typed binding value across all columns, first occurrence order."""
        seen: Dict[str, None] = {}
        for binding in self.bindings:
            for term in binding.values():
                if term.get("type") == "uri" and "value" in term:
                    seen.setdefault(term["value"], None)
        return list(seen)

    def values(self) -> List[Dict[str, Any]]:
        """Bindings flattened to {var: value}."""
        return [
            {var: term.get("value") for var, term in binding.items()}
            for binding in self.bindings
        ]


def _check_term(term: Any, graph: str) -> None:
    if not (
        isinstance(term, dict)
        and isinstance(term.get("type"), str)
        and isinstance(term.get("value"), str)
    ):
        raise UpstreamError(f"Malformed reasoner term for graph {graph}: {term!r}")


def _parse_results(payload: Any, graph: str) -> SparqlResults:
    if not isinstance(payload, dict):
        raise UpstreamError(f"Malformed reasoner response for graph {graph}: not an object")
    head = payload.get("head", {})
    results = payload.get("results", {})
    if not isinstance(head, dict) or not isinstance(results, dict):
        raise UpstreamError(f"Malformed reasoner response for graph {graph}")
    bindings = results.get("bindings", [])
    if not isinstance(bindings, list) or not all(isinstance(b, dict) for b in bindings):
        raise UpstreamError(f"Malformed reasoner bindings for graph {graph}")
    for binding in bindings:
        for term in binding.values():
            _check_term(term, graph)
    return SparqlResults(vars=list(head.get("vars", [])), bindings=bindings, graph=graph)


class ReasonerClient:
    """
    Synchronous HTTP client for the reasoner.

    Args:
        address: host[:port] of the reasoner
        default_timeout: seconds allowed when the context has no deadline
        transport: optional httpx transport (tests inject httpx.MockTransport)
    """

    def __init__(
        self,
        address: str,
        default_timeout: float = 300.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.address = address
        self.default_timeout = default_timeout
        self._transport = transport

    def url_for(self, graph: Optional[str]) -> str:
        graph = graph or DEFAULT_GRAPH
        return f"http://{self.address}/query/{quote(graph, safe='')}"

    def _timeout(self, ctx: OperationContext) -> float:
        remaining = ctx.remaining()
        return self.default_timeout if remaining is None else remaining

    def _run(self, ctx: OperationContext, call: Callable[[httpx.Client], T]) -> T:
        """
        Run ``call`` with a fresh client on a helper thread.

        The calling thread waits on the result and re-checks ``ctx`` every
        CANCEL_POLL_SECONDS. Cancelling ``ctx`` closes the client, and the
        caller gets OperationCancelled without waiting for the reasoner.
        """
        client = httpx.Client(timeout=self._timeout(ctx), transport=self._transport)
        unregister = ctx.token.add_callback(client.close)
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="reasoner")
        try:
            future = executor.submit(call, client)
            future.add_done_callback(lambda f: client.close())
            while True:
                try:
                    return future.result(timeout=CANCEL_POLL_SECONDS)
                except FuturesTimeoutError:
                    try:
                        ctx.check()
                    except OperationCancelled:
                        client.close()
                        raise
                except MortarError:
                    raise
                except Exception:
                    # A client closed by cancellation fails with a driver error
                    ctx.check()
                    raise
        finally:
            unregister()
            executor.shutdown(wait=False)

    def query(self, ctx: OperationContext, graph: Optional[str], query: str) -> SparqlResults:
        """
        Run ``query`` against ``graph`` and parse the SPARQL JSON results.

        Raises:
            UpstreamError: unreachable reasoner, non-2xx status or bad JSON
            OperationCancelled: if the context is cancelled or expired
        """
        ctx.check()
        graph = graph or DEFAULT_GRAPH
        url = self.url_for(graph)
        start_time = time.time()

        def call(client: httpx.Client) -> Any:
            body = bytearray()
            try:
                with client.stream(
                    "POST", url, data={"query": query}, headers={"Accept": SPARQL_RESULTS_JSON}
                ) as response:
                    if response.status_code >= 300:
                        text = response.read().decode("utf-8", errors="replace")
                        raise UpstreamError(
                            f"Reasoner returned {response.status_code} for graph {graph}: {text}"
                        )
                    for chunk in response.iter_bytes():
                        ctx.check()
                        body.extend(chunk)
            except httpx.HTTPError as e:
                ctx.check()
                raise UpstreamError(f"Could not reach reasoner for graph {graph}: {e}") from e
            try:
                return json.loads(bytes(body))
            except ValueError as e:
                raise UpstreamError(f"Reasoner returned invalid JSON for graph {graph}: {e}") from e

        payload = self._run(ctx, call)
        results = _parse_results(payload, graph)
        results.execution_time_ms = (time.time() - start_time) * 1000
        ctx.logger.debug(
            f"Reasoner query on {graph}: {len(results)} rows in {results.execution_time_ms:.1f}ms"
        )
        return results

    def query_raw(
        self,
        ctx: OperationContext,
        graph: Optional[str],
        query: str,
        writer: BinaryIO,
        accept: Optional[str] = None,
    ) -> int:
        """
        Post ``query`` as the request body and stream the response to ``writer``.

        Returns the number of bytes written. The context is checked between
        chunks so a cancelled call stops at the next chunk boundary.
        """
        ctx.check()
        graph = graph or DEFAULT_GRAPH
        url = self.url_for(graph)
        headers = {"Accept": accept} if accept else {}

        def call(client: httpx.Client) -> int:
            written = 0
            try:
                with client.stream("POST", url, content=query.encode("utf-8"), headers=headers) as response:
                    if response.status_code >= 300:
                        body = response.read().decode("utf-8", errors="replace")
                        raise UpstreamError(
                            f"Reasoner returned {response.status_code} for graph {graph}: {body}"
                        )
                    for chunk in response.iter_bytes():
                        ctx.check()
                        writer.write(chunk)
                        written += len(chunk)
            except httpx.HTTPError as e:
                ctx.check()
                raise UpstreamError(f"Could not reach reasoner for graph {graph}: {e}") from e
            return written

        written = self._run(ctx, call)
        ctx.logger.debug(f"Reasoner raw query on {graph}: {written} bytes")
        return written
