"""
Data model for mortarbase.

Streams, readings, triples and the request types accepted by the export
and graph APIs. Datasets wrap lazy iterables so that large historical
backfills never have to be materialized by the caller.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Iterator, Optional, Union

from mortarbase.errors import ValidationError

RDF_TYPE = "http://www.w3.org/1999/02/22-rdf-syntax-ns#type"
BRICK_POINT = "https://brickschema.org/schema/Brick#Point"
DEFAULT_GRAPH = "default"


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC; naive inputs are assumed UTC."""
    if not isinstance(value, datetime):
        raise ValidationError(f"Expected datetime, got {type(value).__name__}: {value!r}")
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


# =============================================================================
# Streams and readings
# =============================================================================

@dataclass
class Stream:
    """A source+name time series, optionally classified against Brick."""
    source: str
    name: str
    units: Optional[str] = None
    brick_uri: Optional[str] = None
    brick_class: Optional[str] = None
    id: Optional[int] = None

    def __str__(self) -> str:
        parts = [f"source={self.source}", f"name={self.name}"]
        if self.units:
            parts.append(f"units={self.units}")
        if self.brick_uri:
            parts.append(f"uri={self.brick_uri}")
        if self.brick_class:
            parts.append(f"class={self.brick_class}")
        return f"<Stream {' '.join(parts)}>"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "name": self.name,
            "units": self.units,
            "brick_uri": self.brick_uri,
            "brick_class": self.brick_class,
        }


@dataclass
class Reading:
    """A single (time, value) observation of a stream."""
    time: datetime
    value: float


ReadingLike = Union[Reading, tuple]


@dataclass
class Dataset:
    """
    A batch of readings for one stream.

    ``readings`` may be any iterable (a generator included); it is consumed
    exactly once during ingestion.
    """
    source: str
    name: str
    readings: Iterable[ReadingLike] = field(default_factory=list)

    def __str__(self) -> str:
        return f"<Dataset source={self.source} name={self.name}>"

    def rows(self) -> Iterator[tuple[datetime, float]]:
        """Yield validated (naive UTC time, float value) pairs."""
        for idx, item in enumerate(self.readings):
            if isinstance(item, Reading):
                t, v = item.time, item.value
            else:
                try:
                    t, v = item
                except (TypeError, ValueError) as e:
                    raise ValidationError(
                        f"Reading {idx} of {self} is not a (time, value) pair: {item!r}"
                    ) from e
            if not isinstance(t, datetime):
                raise ValidationError(f"Reading {idx} of {self} has invalid time {t!r}")
            if isinstance(v, bool) or not isinstance(v, (int, float)):
                raise ValidationError(f"Reading {idx} of {self} has invalid value {v!r}")
            yield to_utc_naive(t), float(v)


# =============================================================================
# Triples
# =============================================================================

@dataclass(frozen=True)
class Triple:
    """An RDF statement with terms in N-Triples syntax."""
    s: str
    p: str
    o: str

    def to_ntriples(self) -> str:
        return f"{self.s} {self.p} {self.o} ."


TripleLike = Union[Triple, tuple]


@dataclass
class TripleDataset:
    """
    A batch of triples asserted into graph ``source`` by ``origin``.

    All triples in the batch share the batch ``time`` (now, if not given).
    """
    source: str
    origin: str
    triples: Iterable[TripleLike] = field(default_factory=list)
    time: Optional[datetime] = None

    def __str__(self) -> str:
        return f"<TripleDataset source={self.source} origin={self.origin}>"

    def rows(self) -> Iterator[tuple[str, str, datetime, str, str, str]]:
        """Yield (source, origin, time, s, p, o) rows ready for staging."""
        batch_time = to_utc_naive(self.time) if self.time is not None else utcnow()
        for idx, item in enumerate(self.triples):
            if isinstance(item, Triple):
                s, p, o = item.s, item.p, item.o
            else:
                try:
                    s, p, o = item
                except (TypeError, ValueError) as e:
                    raise ValidationError(
                        f"Triple {idx} of {self} is not an (s, p, o) tuple: {item!r}"
                    ) from e
            for term in (s, p, o):
                if not isinstance(term, str) or not term.strip():
                    raise ValidationError(f"Triple {idx} of {self} has an empty term: {item!r}")
            yield self.source, self.origin, batch_time, s, p, o


# =============================================================================
# Export queries
# =============================================================================

class AggregationFunc(Enum):
    """Supported aggregation functions, mapped to DuckDB equivalents."""
    MEAN = "mean"
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    COUNT = "count"

    def to_sql(self, column: str) -> str:
        sql_name = {
            AggregationFunc.MEAN: "avg",
            AggregationFunc.SUM: "sum",
            AggregationFunc.MIN: "min",
            AggregationFunc.MAX: "max",
            AggregationFunc.COUNT: "count",
        }[self]
        return f"CAST({sql_name}({column}) AS DOUBLE)"


_WINDOW_PATTERN = re.compile(r"^\s*(\d+)\s*([a-zA-Z]+)\s*$")

_WINDOW_UNITS = {
    "s": "second", "sec": "second", "second": "second", "seconds": "second",
    "m": "minute", "min": "minute", "minute": "minute", "minutes": "minute",
    "h": "hour", "hour": "hour", "hours": "hour",
    "d": "day", "day": "day", "days": "day",
    "w": "week", "week": "week", "weeks": "week",
}

_UNIT_SECONDS = {"second": 1, "minute": 60, "hour": 3600, "day": 86400, "week": 604800}


def parse_window(window: str) -> tuple[int, str]:
    """Parse a window such as '15m' or '1 hour' into (count, unit)."""
    if not isinstance(window, str):
        raise ValidationError(f"Aggregation window must be a string, got {window!r}")
    match = _WINDOW_PATTERN.match(window)
    if not match:
        raise ValidationError(f"Invalid aggregation window: {window!r}")
    count = int(match.group(1))
    unit = _WINDOW_UNITS.get(match.group(2).lower())
    if unit is None or count <= 0:
        raise ValidationError(f"Invalid aggregation window: {window!r}")
    return count, unit


@dataclass
class Aggregation:
    """Fixed-width time bucketing with one aggregate function."""
    func: AggregationFunc
    window: str

    def __post_init__(self):
        if isinstance(self.func, str):
            try:
                self.func = AggregationFunc(self.func.lower())
            except ValueError as e:
                raise ValidationError(f"Unsupported aggregation function: {self.func!r}") from e
        parse_window(self.window)

    @property
    def interval_sql(self) -> str:
        count, unit = parse_window(self.window)
        return f"INTERVAL '{count} {unit}'"

    @property
    def width(self) -> timedelta:
        count, unit = parse_window(self.window)
        return timedelta(seconds=count * _UNIT_SECONDS[unit])


@dataclass
class Query:
    """An export request: a time range plus one way of choosing streams."""
    start: datetime
    end: datetime
    sparql: Optional[str] = None
    graph: str = DEFAULT_GRAPH
    uris: list[str] = field(default_factory=list)
    sources: list[str] = field(default_factory=list)
    ids: list[int] = field(default_factory=list)
    aggregation: Optional[Aggregation] = None

    def __post_init__(self):
        self.start = to_utc_naive(self.start)
        self.end = to_utc_naive(self.end)
        if self.end < self.start:
            raise ValidationError(f"Query end {self.end} is before start {self.start}")


@dataclass
class ModelRequest:
    """Selects the state of a named graph as of a point in time."""
    graph: str
    timestamp: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.graph:
            raise ValidationError("ModelRequest requires a graph")
        self.timestamp = to_utc_naive(self.timestamp)


# =============================================================================
# Validation
# =============================================================================

def check_stream(stream: Stream) -> None:
    """Raise ValidationError if the stream lacks a name or source."""
    if not stream.name:
        raise ValidationError(f"Stream has no name: {stream}")
    if not stream.source:
        raise ValidationError(f"Stream has no source: {stream}")


def check_dataset(ds: Dataset) -> None:
    if not ds.source:
        raise ValidationError(f"Dataset has no source: {ds}")
    if not ds.name:
        raise ValidationError(f"Dataset has no name: {ds}")
    if ds.readings is None:
        raise ValidationError(f"Dataset has no readings: {ds}")


def check_triple_dataset(ds: TripleDataset) -> None:
    if not ds.source:
        raise ValidationError(f"Triple dataset has no source: {ds}")
    if not ds.origin:
        raise ValidationError(f"Triple dataset has no origin: {ds}")
    if ds.triples is None:
        raise ValidationError(f"Triple dataset has no triples: {ds}")
