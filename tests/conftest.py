"""
Shared fixtures: an in-memory DuckDB database and a scripted reasoner.
"""

import json
import threading
from datetime import datetime, timedelta
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, unquote

import httpx
import pytest

from mortarbase import MortarDatabase, OperationContext, Stream, background
from mortarbase.config import Config, DatabaseConfig, ExportConfig

APIKEY = "test-key"
T0 = datetime(2024, 1, 1, 12, 0, 0)


class ScriptedReasoner:
    """
    Stands in for the reasoning service behind httpx.MockTransport.

    ``answers`` maps graph -> list of SPARQL JSON bindings returned for any
    structured query. Graphs in ``failing`` answer HTTP 500.
    """

    def __init__(self):
        self.answers: dict[str, list[dict]] = {}
        self.failing: set[str] = set()
        self.requests: list[httpx.Request] = []
        self.on_request = None
        self._lock = threading.Lock()

    def handler(self, request: httpx.Request) -> httpx.Response:
        graph = unquote(request.url.path.rsplit("/", 1)[-1])
        with self._lock:
            self.requests.append(request)
        if self.on_request is not None:
            self.on_request(request)
        if graph in self.failing:
            return httpx.Response(500, text=f"reasoner failed on {graph}")

        if request.headers.get("accept") == "application/sparql-results+json":
            form = parse_qs(request.content.decode("utf-8"))
            assert "query" in form
            bindings = self.answers.get(graph, [])
            payload = {
                "head": {"vars": sorted({v for b in bindings for v in b})},
                "results": {"bindings": bindings},
            }
            return httpx.Response(
                200,
                content=json.dumps(payload).encode("utf-8"),
                headers={"content-type": "application/sparql-results+json"},
            )
        return httpx.Response(200, content=b"raw:" + request.content)

    def answer_uris(self, graph: str, *uris: str) -> None:
        self.answers[graph] = [{"p": {"type": "uri", "value": u}} for u in uris]


@pytest.fixture
def reasoner():
    return ScriptedReasoner()


@pytest.fixture
def config():
    return Config(
        database=DatabaseConfig(path=":memory:", max_connections=8, pool_timeout=5.0),
        export=ExportConfig(flush_rows=3, codec="lz4"),
        qualify_workers=4,
        staging_chunk_rows=4,
    )


@pytest.fixture
def db(config, reasoner):
    database = MortarDatabase.from_config(config, transport=httpx.MockTransport(reasoner.handler))
    yield database
    database.close()


@pytest.fixture
def admin():
    """Context for administrative calls (grants)."""
    return background()


@pytest.fixture
def ctx():
    """Context carrying the test API key."""
    return OperationContext(apikey=APIKEY)


@pytest.fixture
def authorized_db(db, admin):
    """Database where the test key may write to bldg1 and bldg2."""
    db.grant(admin, APIKEY, "bldg1")
    db.grant(admin, APIKEY, "bldg2")
    return db


@pytest.fixture
def temp_stream(authorized_db, ctx):
    """A registered, classified stream in bldg1."""
    stream = Stream(
        source="bldg1",
        name="temp1",
        units="F",
        brick_uri="http://example.org/bldg1#temp1",
        brick_class="https://brickschema.org/schema/Brick#Air_Temperature_Sensor",
    )
    authorized_db.register_stream(ctx, stream)
    return stream


def minutes(n: int) -> timedelta:
    return timedelta(minutes=n)


def count_rows(db, table: str) -> int:
    with db.pool.connection() as conn:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]


@pytest.fixture
def stalled_reasoner():
    """
    A real HTTP reasoner that sends headers, then stalls before the body.

    Yields its ``host:port``. The body is released at teardown (or after
    ``stall`` seconds) so no server thread outlives the test by long.
    """
    release = threading.Event()
    stall = 5.0

    class StallingHandler(BaseHTTPRequestHandler):
        def do_POST(self):
            self.rfile.read(int(self.headers.get("content-length", 0)))
            body = json.dumps({"head": {"vars": []}, "results": {"bindings": []}}).encode("utf-8")
            self.send_response(200)
            self.send_header("content-type", "application/sparql-results+json")
            self.send_header("content-length", str(len(body)))
            self.end_headers()
            self.wfile.flush()
            release.wait(stall)
            try:
                self.wfile.write(body)
            except (BrokenPipeError, ConnectionResetError):
                pass

        def log_message(self, format, *args):
            pass

    server = ThreadingHTTPServer(("127.0.0.1", 0), StallingHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield f"{host}:{port}"
    release.set()
    server.shutdown()
    server.server_close()
