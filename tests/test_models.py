"""
Tests for the data model and input validation.
"""

from datetime import datetime, timedelta, timezone

import pytest

from mortarbase.errors import ValidationError
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
    check_dataset,
    check_stream,
    parse_window,
    to_utc_naive,
)


class TestTimestamps:
    """Timestamps are stored as naive UTC."""

    def test_naive_is_kept(self):
        t = datetime(2024, 1, 1, 12, 0)
        assert to_utc_naive(t) == t

    def test_aware_is_converted(self):
        t = datetime(2024, 1, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
        assert to_utc_naive(t) == datetime(2024, 1, 1, 12, 0)

    def test_rejects_non_datetime(self):
        with pytest.raises(ValidationError):
            to_utc_naive("2024-01-01")


class TestAggregationGrammar:
    """Aggregation functions and windows form closed sets."""

    @pytest.mark.parametrize("window,expected", [
        ("15m", (15, "minute")),
        ("1 hour", (1, "hour")),
        ("30s", (30, "second")),
        ("2 days", (2, "day")),
        ("1w", (1, "week")),
        ("5min", (5, "minute")),
    ])
    def test_valid_windows(self, window, expected):
        assert parse_window(window) == expected

    @pytest.mark.parametrize("window", ["", "m", "15", "0m", "-5m", "1 fortnight", "1.5h", "15 minutes ago"])
    def test_invalid_windows(self, window):
        with pytest.raises(ValidationError):
            parse_window(window)

    def test_function_from_string(self):
        agg = Aggregation("MEAN", "1h")
        assert agg.func is AggregationFunc.MEAN
        assert agg.interval_sql == "INTERVAL '1 hour'"
        assert agg.width == timedelta(hours=1)

    def test_unknown_function(self):
        with pytest.raises(ValidationError):
            Aggregation("median", "1h")

    def test_bad_window_rejected_at_construction(self):
        with pytest.raises(ValidationError):
            Aggregation(AggregationFunc.MAX, "soon")

    def test_sql_mapping(self):
        assert AggregationFunc.MEAN.to_sql("value") == "CAST(avg(value) AS DOUBLE)"
        assert AggregationFunc.COUNT.to_sql("value") == "CAST(count(value) AS DOUBLE)"


class TestQuery:
    """Export request validation."""

    def test_end_before_start(self):
        with pytest.raises(ValidationError):
            Query(start=datetime(2024, 1, 2), end=datetime(2024, 1, 1))

    def test_defaults(self):
        q = Query(start=datetime(2024, 1, 1), end=datetime(2024, 1, 2))
        assert q.graph == "default"
        assert q.ids == [] and q.uris == [] and q.sparql is None

    def test_model_request_requires_graph(self):
        with pytest.raises(ValidationError):
            ModelRequest(graph="")


class TestDatasets:
    """Lazy dataset row validation."""

    def test_rows_accept_tuples_and_readings(self):
        t = datetime(2024, 1, 1)
        ds = Dataset("bldg1", "temp", [(t, 1), Reading(t, 2.5)])
        assert list(ds.rows()) == [(t, 1.0), (t, 2.5)]

    def test_rows_are_lazy(self):
        consumed = []

        def gen():
            for i in range(3):
                consumed.append(i)
                yield datetime(2024, 1, 1, 0, i), float(i)

        rows = Dataset("bldg1", "temp", gen()).rows()
        assert consumed == []
        next(rows)
        assert consumed == [0]

    @pytest.mark.parametrize("bad", [
        ("2024-01-01", 1.0),
        (datetime(2024, 1, 1), "hot"),
        (datetime(2024, 1, 1), None),
        (datetime(2024, 1, 1), True),
        (datetime(2024, 1, 1),),
    ])
    def test_bad_rows(self, bad):
        with pytest.raises(ValidationError):
            list(Dataset("bldg1", "temp", [bad]).rows())

    def test_check_dataset(self):
        with pytest.raises(ValidationError):
            check_dataset(Dataset("", "temp"))
        with pytest.raises(ValidationError):
            check_dataset(Dataset("bldg1", ""))

    def test_check_stream(self):
        with pytest.raises(ValidationError):
            check_stream(Stream(source="bldg1", name=""))
        check_stream(Stream(source="bldg1", name="temp"))

    def test_triple_rows_share_batch_time(self):
        t = datetime(2024, 1, 1)
        ds = TripleDataset("bldg1", "upload", [Triple("<a>", "<b>", "<c>"), ("<a>", "<b>", "<d>")], time=t)
        rows = list(ds.rows())
        assert rows == [
            ("bldg1", "upload", t, "<a>", "<b>", "<c>"),
            ("bldg1", "upload", t, "<a>", "<b>", "<d>"),
        ]

    def test_triple_empty_term(self):
        ds = TripleDataset("bldg1", "upload", [("<a>", " ", "<c>")])
        with pytest.raises(ValidationError):
            list(ds.rows())

    def test_stream_str(self):
        s = Stream(source="bldg1", name="temp", units="F")
        assert str(s) == "<Stream source=bldg1 name=temp units=F>"
