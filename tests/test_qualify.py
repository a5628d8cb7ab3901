"""
Tests for the qualification fan-out across named graphs.
"""

import threading
import time
from urllib.parse import parse_qs

import httpx
import pytest

from mortarbase import OperationContext, TripleDataset
from mortarbase.errors import OperationCancelled, PartialFailure, UpstreamError
from mortarbase.reasoner import ReasonerClient
from mortarbase.storage.qualify import QualificationEngine

A = "<http://example.org/a>"
TYPE = "<http://www.w3.org/1999/02/22-rdf-syntax-ns#type>"
AHU = "<https://brickschema.org/schema/Brick#AHU>"

QUERIES = [
    "SELECT ?ahu WHERE { ?ahu a brick:AHU }",
    "SELECT ?vav WHERE { ?vav a brick:VAV }",
    "SELECT ?s WHERE { ?s ?p ?o }",
]


@pytest.fixture
def graphs(authorized_db, ctx):
    for source in ("bldg1", "bldg2"):
        authorized_db.add_triples(ctx, TripleDataset(source, "model", [(A, TYPE, AHU)]))
    return authorized_db


def bindings(n):
    return [{"s": {"type": "uri", "value": f"http://example.org/{i}"}} for i in range(n)]


class TestQualify:
    """R queries x G graphs through the reasoner."""

    def test_counts_per_graph(self, graphs, ctx, reasoner):
        reasoner.answers["bldg1"] = bindings(2)
        reasoner.answers["bldg2"] = bindings(5)
        result = graphs.qualify(ctx, QUERIES)
        assert result == {"bldg1": [2, 2, 2], "bldg2": [5, 5, 5]}
        assert len(reasoner.requests) == 6

    def test_every_graph_has_one_entry_per_query(self, graphs, ctx):
        result = graphs.qualify(ctx, QUERIES)
        assert set(result) == {"bldg1", "bldg2"}
        assert all(len(counts) == len(QUERIES) for counts in result.values())

    def test_no_graphs(self, db, ctx, reasoner):
        assert db.qualify(ctx, QUERIES) == {}
        assert reasoner.requests == []

    def test_no_queries(self, graphs, ctx):
        assert graphs.qualify(ctx, []) == {"bldg1": [], "bldg2": []}

    def test_partial_failure_keeps_completed_counts(self, graphs, ctx, reasoner):
        reasoner.answers["bldg1"] = bindings(3)
        reasoner.failing.add("bldg2")
        with pytest.raises(PartialFailure) as exc_info:
            graphs.qualify(ctx, QUERIES)

        err = exc_info.value
        assert err.counts["bldg1"] == [3, 3, 3]
        assert set(err.counts) == {"bldg1", "bldg2"}
        assert len(err.errors) >= 1
        assert all(isinstance(e, UpstreamError) for e in err.errors)
        assert err.to_dict()["counts"]["bldg1"] == [3, 3, 3]


class TestQualificationEngine:
    """Worker behaviour with a scripted graph list."""

    def _engine(self, handler, graphs, workers):
        client = ReasonerClient("reasoner:3030", transport=httpx.MockTransport(handler))
        return QualificationEngine(client, lambda ctx: list(graphs), workers=workers)

    def test_failed_worker_stops_others_continue(self):
        seen = []
        lock = threading.Lock()

        def handler(request):
            graph = request.url.path.rsplit("/", 1)[-1]
            with lock:
                seen.append(graph)
            if graph == "g0":
                return httpx.Response(503, text="busy")
            return httpx.Response(200, json={"head": {"vars": []}, "results": {"bindings": bindings(1)}})

        engine = self._engine(handler, ["g0", "g1", "g2", "g3"], workers=2)
        with pytest.raises(PartialFailure) as exc_info:
            engine.qualify(OperationContext(), ["q"])

        counts = exc_info.value.counts
        assert counts["g0"] == [None]
        assert counts["g1"] == counts["g2"] == counts["g3"] == [1]
        assert len(exc_info.value.errors) == 1

    def test_cancel_stops_pending_jobs(self):
        """An answer that arrives after cancellation is not counted."""
        ctx = OperationContext()

        def handler(request):
            ctx.cancel()
            return httpx.Response(200, json={"head": {"vars": []}, "results": {"bindings": bindings(4)}})

        engine = self._engine(handler, ["g0", "g1", "g2"], workers=1)
        with pytest.raises(PartialFailure) as exc_info:
            engine.qualify(ctx, ["q1", "q2"])

        err = exc_info.value
        assert err.counts == {"g0": [None, None], "g1": [None, None], "g2": [None, None]}
        assert len(err.errors) == 1
        assert isinstance(err.errors[0], OperationCancelled)

    def test_cancel_reaches_every_worker(self):
        ctx = OperationContext()
        started = threading.Barrier(3)

        def handler(request):
            started.wait(timeout=5)
            ctx.cancel()
            return httpx.Response(200, json={"head": {"vars": []}, "results": {"bindings": []}})

        engine = self._engine(handler, [f"g{i}" for i in range(6)], workers=3)
        with pytest.raises(PartialFailure) as exc_info:
            engine.qualify(ctx, ["q"])

        err = exc_info.value
        completed = [c for counts in err.counts.values() for c in counts if c is not None]
        assert completed == []
        assert len(err.errors) == 3
        assert all(isinstance(e, OperationCancelled) for e in err.errors)

    def test_structured_request(self):
        captured = []

        def handler(request):
            captured.append(request)
            return httpx.Response(200, json={"head": {"vars": []}, "results": {"bindings": []}})

        engine = self._engine(handler, ["bldg1"], workers=4)
        assert engine.qualify(OperationContext(), ["ASK {}"]) == {"bldg1": [0]}
        request = captured[0]
        assert request.method == "POST"
        assert str(request.url) == "http://reasoner:3030/query/bldg1"
        assert request.headers["accept"] == "application/sparql-results+json"
        assert parse_qs(request.content.decode("utf-8"))["query"] == ["ASK {}"]

    def test_cancel_interrupts_stalled_reasoner(self, stalled_reasoner):
        ctx = OperationContext()
        engine = QualificationEngine(
            ReasonerClient(stalled_reasoner), lambda ctx: ["g0", "g1"], workers=2
        )
        timer = threading.Timer(0.3, ctx.cancel)
        timer.start()
        start = time.monotonic()
        try:
            with pytest.raises(PartialFailure) as exc_info:
                engine.qualify(ctx, ["q"])
        finally:
            timer.cancel()

        assert time.monotonic() - start < 2.0
        err = exc_info.value
        assert err.counts == {"g0": [None], "g1": [None]}
        assert len(err.errors) == 2
        assert all(isinstance(e, OperationCancelled) for e in err.errors)
