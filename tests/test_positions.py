from __future__ import annotations

import pytest
from lsprotocol.types import Position, Range

from tsbridge.exceptions import ProtocolError
from tsbridge.positions import (
    file_location,
    path_to_uri,
    span_to_location,
    to_location,
    to_position,
    to_range,
    uri_to_path,
)


def test_location_shifts_to_one_based_and_back() -> None:
    position = Position(line=3, character=7)
    assert to_location(position) == {"line": 4, "offset": 8}
    assert to_position(to_location(position)) == position


def test_to_position_clamps_zero_and_rejects_garbage() -> None:
    assert to_position({"line": 0, "offset": 0}) == Position(line=0, character=0)
    with pytest.raises(ProtocolError):
        to_position({"line": "x", "offset": 1})
    with pytest.raises(ProtocolError):
        to_position({"offset": 1})


def test_to_range_converts_both_ends() -> None:
    assert to_range({"line": 1, "offset": 5}, {"line": 2, "offset": 1}) == Range(
        start=Position(line=0, character=4), end=Position(line=1, character=0)
    )


def test_uri_and_path_conversion() -> None:
    assert uri_to_path("file:///proj/src/a%20b.ts") == "/proj/src/a b.ts"
    assert path_to_uri("/proj/src/a b.ts") == "file:///proj/src/a%20b.ts"
    assert uri_to_path("untitled:Untitled-1") == "untitled:Untitled-1"
    assert path_to_uri("^/untitled/ts-nul-authority/Untitled-1") == (
        "^/untitled/ts-nul-authority/Untitled-1"
    )


def test_file_location_and_span_to_location() -> None:
    assert file_location("/proj/a.ts", Position(line=0, character=2)) == {
        "file": "/proj/a.ts",
        "line": 1,
        "offset": 3,
    }
    location = span_to_location(
        {"file": "/proj/b.ts", "start": {"line": 2, "offset": 3}, "end": {"line": 2, "offset": 6}}
    )
    assert location.uri == "file:///proj/b.ts"
    assert location.range.start == Position(line=1, character=2)
    assert location.range.end == Position(line=1, character=5)


def test_span_to_location_rejects_incomplete_spans() -> None:
    with pytest.raises(ProtocolError):
        span_to_location({"start": {"line": 1, "offset": 1}, "end": {"line": 1, "offset": 2}})
    with pytest.raises(ProtocolError):
        span_to_location({"file": "/proj/a.ts", "start": {"line": 1, "offset": 1}})
