from __future__ import annotations

from collections.abc import Iterable

from lsprotocol.types import Position, TextEdit
from pygls.workspace import TextDocument

from tsbridge.exceptions import ProtocolError


def _key(position: Position) -> tuple[int, int]:
    return (position.line, position.character)


def sort_edits(edits: Iterable[TextEdit]) -> list[TextEdit]:
    """Order edits by start position; overlapping targets are rejected."""
    ordered = sorted(edits, key=lambda edit: _key(edit.range.start))
    for previous, current in zip(ordered, ordered[1:]):
        if _key(previous.range.end) > _key(current.range.start):
            raise ProtocolError(
                "overlapping edits at "
                f"{current.range.start.line}:{current.range.start.character}"
            )
    return ordered


def apply_text_edits(text: str, edits: Iterable[TextEdit]) -> str:
    """Apply non-overlapping edits front to back with a running offset."""
    document = TextDocument("inmemory://apply", source=text)
    pieces: list[str] = []
    offset = 0
    for edit in sort_edits(edits):
        start = document.offset_at_position(edit.range.start)
        end = document.offset_at_position(edit.range.end)
        pieces.append(text[offset:start])
        pieces.append(edit.new_text)
        offset = end
    pieces.append(text[offset:])
    return "".join(pieces)


def utf16_length(text: str) -> int:
    return len(text.encode("utf-16-le")) // 2


def document_end(text: str) -> Position:
    lines = text.split("\n")
    return Position(line=len(lines) - 1, character=utf16_length(lines[-1]))
