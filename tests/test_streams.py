"""
Tests for stream registration and its classification triples.
"""

import pytest

from conftest import count_rows
from mortarbase import OperationContext, Stream
from mortarbase.errors import AuthorizationError, NotFoundError, ValidationError
from mortarbase.models import BRICK_POINT, RDF_TYPE
from mortarbase.storage.streams import registration_origin, type_triple

URI = "http://example.org/bldg1#temp1"
SENSOR = "https://brickschema.org/schema/Brick#Air_Temperature_Sensor"
SETPOINT = "https://brickschema.org/schema/Brick#Air_Temperature_Setpoint"


def triple_rows(db):
    with db.pool.connection() as conn:
        return conn.execute(
            "SELECT source, origin, s, p, o FROM triples ORDER BY time"
        ).fetchall()


class TestTypeTriple:
    """The rdf:type statement implied by a classification."""

    def test_with_class(self):
        s = Stream(source="bldg1", name="temp1", brick_uri=URI, brick_class=SENSOR)
        assert type_triple(s) == (f"<{URI}>", f"<{RDF_TYPE}>", f"<{SENSOR}>")

    def test_defaults_to_point(self):
        s = Stream(source="bldg1", name="temp1", brick_uri=URI)
        assert type_triple(s)[2] == f"<{BRICK_POINT}>"

    def test_unclassified(self):
        assert type_triple(Stream(source="bldg1", name="temp1")) is None

    def test_origin(self):
        assert registration_origin(Stream(source="bldg1", name="temp1")) == "stream_registration:temp1"


class TestRegisterStream:
    """Upsert keyed on (source, name)."""

    def test_returns_id(self, authorized_db, ctx):
        stream = Stream(source="bldg1", name="temp1", units="F")
        stream_id = authorized_db.register_stream(ctx, stream)
        assert isinstance(stream_id, int)
        assert stream.id == stream_id

    def test_reregistration_is_idempotent(self, authorized_db, ctx):
        first = authorized_db.register_stream(
            ctx, Stream(source="bldg1", name="temp1", units="F", brick_uri=URI, brick_class=SENSOR)
        )
        second = authorized_db.register_stream(
            ctx, Stream(source="bldg1", name="temp1", units="F", brick_uri=URI, brick_class=SENSOR)
        )
        assert first == second
        assert count_rows(authorized_db, "streams") == 1
        assert count_rows(authorized_db, "triples") == 1

        stored = authorized_db.get_stream(ctx, "bldg1", "temp1")
        assert stored.to_dict() == {
            "id": first, "source": "bldg1", "name": "temp1", "units": "F",
            "brick_uri": URI, "brick_class": SENSOR,
        }

    def test_reregistration_updates_in_place(self, authorized_db, ctx):
        first = authorized_db.register_stream(ctx, Stream(source="bldg1", name="temp1", units="F"))
        second = authorized_db.register_stream(ctx, Stream(source="bldg1", name="temp1", units="C"))
        assert first == second
        assert authorized_db.get_stream(ctx, "bldg1", "temp1").units == "C"

    def test_distinct_sources_get_distinct_ids(self, authorized_db, ctx):
        a = authorized_db.register_stream(ctx, Stream(source="bldg1", name="temp1"))
        b = authorized_db.register_stream(ctx, Stream(source="bldg2", name="temp1"))
        assert a != b

    def test_classification_triple(self, authorized_db, ctx):
        authorized_db.register_stream(
            ctx, Stream(source="bldg1", name="temp1", brick_uri=URI, brick_class=SENSOR)
        )
        assert triple_rows(authorized_db) == [
            ("bldg1", "stream_registration:temp1", f"<{URI}>", f"<{RDF_TYPE}>", f"<{SENSOR}>"),
        ]

    def test_reclassification_appends_version(self, authorized_db, ctx):
        authorized_db.register_stream(
            ctx, Stream(source="bldg1", name="temp1", brick_uri=URI, brick_class=SENSOR)
        )
        authorized_db.register_stream(
            ctx, Stream(source="bldg1", name="temp1", brick_uri=URI, brick_class=SETPOINT)
        )
        rows = triple_rows(authorized_db)
        assert [r[4] for r in rows] == [f"<{SENSOR}>", f"<{SETPOINT}>"]

    def test_no_uri_no_triple(self, authorized_db, ctx):
        authorized_db.register_stream(ctx, Stream(source="bldg1", name="temp1", units="F"))
        assert count_rows(authorized_db, "triples") == 0

    def test_unauthorized(self, db, ctx):
        with pytest.raises(AuthorizationError, match="bldg1"):
            db.register_stream(ctx, Stream(source="bldg1", name="temp1", brick_uri=URI))
        assert count_rows(db, "streams") == 0
        assert count_rows(db, "triples") == 0

    def test_invalid(self, authorized_db, ctx):
        with pytest.raises(ValidationError):
            authorized_db.register_stream(ctx, Stream(source="bldg1", name=""))

    def test_missing_identity(self, authorized_db):
        with pytest.raises(AuthorizationError):
            authorized_db.register_stream(OperationContext(), Stream(source="bldg1", name="temp1"))


class TestLookup:
    """Reading stream identities back."""

    def test_get_missing(self, db, ctx):
        with pytest.raises(NotFoundError):
            db.get_stream(ctx, "bldg1", "nope")

    def test_list_streams(self, authorized_db, ctx):
        authorized_db.register_stream(ctx, Stream(source="bldg1", name="a"))
        authorized_db.register_stream(ctx, Stream(source="bldg2", name="b"))
        assert [s.name for s in authorized_db.list_streams(ctx)] == ["a", "b"]
        assert [s.name for s in authorized_db.list_streams(ctx, source="bldg2")] == ["b"]
