from __future__ import annotations

import pytest
from lsprotocol.types import (
    Position,
    Range,
    TextDocumentContentChangePartial,
    TextDocumentContentChangeWholeDocument,
)

from tests.transport_helpers import ScriptedTransport
from tsbridge.correlator import CommandCorrelator
from tsbridge.documents import SessionManager, SessionState
from tsbridge.exceptions import InvalidStateError

URI = "file:///proj/src/app.ts"
FILE = "/proj/src/app.ts"


def _manager(transport: ScriptedTransport, **kwargs: object) -> SessionManager:
    return SessionManager(CommandCorrelator(transport), **kwargs)  # type: ignore[arg-type]


def _range(start_line: int, start_char: int, end_line: int, end_char: int) -> Range:
    return Range(
        start=Position(line=start_line, character=start_char),
        end=Position(line=end_line, character=end_char),
    )


def test_open_sends_full_text_and_script_kind(transport: ScriptedTransport) -> None:
    manager = _manager(transport, project_root="/proj")
    session = manager.open(URI, "typescriptreact", 1, "const a = <div/>;\n")
    assert session.file == FILE
    assert transport.last("open")["arguments"] == {
        "file": FILE,
        "fileContent": "const a = <div/>;\n",
        "scriptKindName": "TSX",
        "projectRootPath": "/proj",
    }


def test_reopen_replaces_session(transport: ScriptedTransport) -> None:
    manager = _manager(transport)
    manager.open(URI, "typescript", 3, "let a = 1;\n")
    manager.open(URI, "typescript", 1, "let b = 2;\n")
    session = manager.require(URI, "test")
    assert session.version == 1
    assert session.text == "let b = 2;\n"
    assert len(transport.sent_for("open")) == 2


def test_operations_on_unopened_document_are_rejected(transport: ScriptedTransport) -> None:
    manager = _manager(transport)
    with pytest.raises(InvalidStateError, match="not open"):
        manager.change(URI, 2, [TextDocumentContentChangeWholeDocument(text="")])
    with pytest.raises(InvalidStateError):
        manager.close(URI)
    with pytest.raises(InvalidStateError):
        manager.file_for(URI, "hover")
    assert transport.sent == []


def test_incremental_changes_forwarded_in_order(transport: ScriptedTransport) -> None:
    manager = _manager(transport)
    changed: list[str] = []
    manager.on_changed(changed.append)
    manager.open(URI, "typescript", 1, "let a = 1;\nlet b = 2;\n")
    manager.change(
        URI,
        2,
        [
            TextDocumentContentChangePartial(range=_range(0, 4, 0, 5), text="alpha"),
            TextDocumentContentChangePartial(range=_range(1, 8, 1, 9), text="42"),
        ],
    )
    first, second = [message["arguments"] for message in transport.sent_for("change")]
    assert first == {
        "file": FILE,
        "line": 1,
        "offset": 5,
        "endLine": 1,
        "endOffset": 6,
        "insertString": "alpha",
    }
    assert (second["line"], second["offset"], second["insertString"]) == (2, 9, "42")
    session = manager.require(URI, "test")
    assert session.text == "let alpha = 1;\nlet b = 42;\n"
    assert session.version == 2
    assert changed == [URI]


def test_whole_document_change_becomes_range_over_previous_text(
    transport: ScriptedTransport,
) -> None:
    manager = _manager(transport)
    manager.open(URI, "typescript", 1, "let a = 1;\nlet b;")
    manager.change(URI, 2, [TextDocumentContentChangeWholeDocument(text="export {};\n")])
    arguments = transport.last("change")["arguments"]
    assert (arguments["line"], arguments["offset"]) == (1, 1)
    assert (arguments["endLine"], arguments["endOffset"]) == (2, 7)
    assert arguments["insertString"] == "export {};\n"
    assert manager.require(URI, "test").text == "export {};\n"


def test_full_sync_sends_one_replacement(transport: ScriptedTransport) -> None:
    manager = _manager(transport, change_sync="full")
    manager.open(URI, "typescript", 1, "ab\n")
    manager.change(
        URI,
        2,
        [
            TextDocumentContentChangePartial(range=_range(0, 0, 0, 1), text="x"),
            TextDocumentContentChangePartial(range=_range(0, 1, 0, 2), text="y"),
        ],
    )
    changes = transport.sent_for("change")
    assert len(changes) == 1
    assert changes[0]["arguments"]["insertString"] == "xy\n"
    assert (changes[0]["arguments"]["endLine"], changes[0]["arguments"]["endOffset"]) == (2, 1)


def test_close_notifies_listeners_then_tsserver(transport: ScriptedTransport) -> None:
    manager = _manager(transport)
    closed: list[str] = []
    manager.on_closed(closed.append)
    session = manager.open(URI, "javascript", 1, "")
    manager.close(URI)
    assert closed == [URI]
    assert session.state is SessionState.CLOSED
    assert not manager.is_open(URI)
    assert transport.last()["command"] == "close"
    assert transport.last()["arguments"] == {"file": FILE}


def test_reopen_after_close_starts_from_given_version(transport: ScriptedTransport) -> None:
    manager = _manager(transport)
    manager.open(URI, "typescript", 1, "a")
    manager.change(URI, 7, [TextDocumentContentChangeWholeDocument(text="b")])
    manager.close(URI)
    session = manager.open(URI, "typescript", 1, "c")
    assert session.version == 1
    assert session.text == "c"
    assert transport.commands() == ["open", "change", "close", "open"]


def test_reopen_of_open_document_notifies_change_listeners(transport: ScriptedTransport) -> None:
    manager = _manager(transport)
    changed: list[str] = []
    manager.on_changed(changed.append)
    manager.open(URI, "typescript", 1, "a")
    assert changed == []
    manager.open(URI, "typescript", 1, "b")
    assert changed == [URI]
    assert transport.commands() == ["open", "open"]
