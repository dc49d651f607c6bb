"""Boundary conversions between LSP and tsserver coordinates.

LSP positions are 0-based ``(line, character)``; tsserver locations are
1-based ``{line, offset}``. Both count UTF-16 code units within a line, so the
conversion is a shift by one in each direction.
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from urllib.parse import unquote, urlparse

from lsprotocol.types import Location, Position, Range

from tsbridge.exceptions import ProtocolError
from tsbridge.json_types import JSONObject


def to_location(position: Position) -> JSONObject:
    return {"line": position.line + 1, "offset": position.character + 1}


def to_position(location: Mapping[str, object]) -> Position:
    try:
        line = int(location["line"])  # type: ignore[arg-type]
        offset = int(location["offset"])  # type: ignore[arg-type]
    except (KeyError, TypeError, ValueError) as exc:
        raise ProtocolError(f"invalid tsserver location: {location!r}") from exc
    return Position(line=max(0, line - 1), character=max(0, offset - 1))


def to_range(start: Mapping[str, object], end: Mapping[str, object]) -> Range:
    return Range(start=to_position(start), end=to_position(end))


def span_range(span: Mapping[str, object]) -> Range:
    start, end = span.get("start"), span.get("end")
    if not isinstance(start, Mapping) or not isinstance(end, Mapping):
        raise ProtocolError(f"invalid tsserver span: {span!r}")
    return to_range(start, end)


def uri_to_path(uri: str) -> str:
    parsed = urlparse(uri)
    if parsed.scheme == "file":
        return unquote(parsed.path)
    return uri


def path_to_uri(path: str) -> str:
    candidate = Path(path)
    if candidate.is_absolute():
        return candidate.as_uri()
    return path


def file_location(file: str, position: Position) -> JSONObject:
    return {"file": file, **to_location(position)}


def span_to_location(span: Mapping[str, object]) -> Location:
    file = span.get("file")
    if not isinstance(file, str):
        raise ProtocolError(f"tsserver span without file: {span!r}")
    return Location(uri=path_to_uri(file), range=span_range(span))
