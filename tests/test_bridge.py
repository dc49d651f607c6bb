from __future__ import annotations

import asyncio

import pytest
from lsprotocol.types import (
    CompletionItem,
    Diagnostic,
    Position,
    TextDocumentContentChangePartial,
    Range,
)

from tests.transport_helpers import ScriptedTransport, reply, settle
from tsbridge.bridge import HOST_INFO, LspBridge
from tsbridge.config import BridgeConfig
from tsbridge.exceptions import InvalidStateError

A_URI, A_FILE = "file:///proj/a.ts", "/proj/a.ts"
B_URI, B_FILE = "file:///proj/b.ts", "/proj/b.ts"


def _bridge(
    transport: ScriptedTransport, **kwargs: object
) -> tuple[LspBridge, list[tuple[str, list[Diagnostic], int | None]]]:
    published: list[tuple[str, list[Diagnostic], int | None]] = []
    bridge = LspBridge(
        transport,
        lambda uri, diagnostics, version: published.append((uri, diagnostics, version)),
        config=BridgeConfig(diagnostics_delay_ms=0),
        root_path="/proj",
        **kwargs,  # type: ignore[arg-type]
    )
    return bridge, published


def _answer_geterr(transport: ScriptedTransport, file: str, semantic: list | None = None) -> None:
    seq = int(transport.last("geterr")["seq"])
    transport.emit("syntaxDiag", {"file": file, "diagnostics": []})
    transport.emit("semanticDiag", {"file": file, "diagnostics": semantic or []})
    transport.emit("suggestionDiag", {"file": file, "diagnostics": []})
    transport.emit("requestCompleted", {"request_seq": seq})


def test_initialize_sends_host_info_and_preferences(transport: ScriptedTransport) -> None:
    bridge, _ = _bridge(transport)
    asyncio.run(reply(transport, bridge.initialize(), None))
    arguments = transport.last("configure")["arguments"]
    assert arguments["hostInfo"] == HOST_INFO
    assert arguments["preferences"]["providePrefixAndSuffixTextForRename"] is True


def test_open_and_change_publish_diagnostics_for_latest_version(
    transport: ScriptedTransport,
) -> None:
    bridge, published = _bridge(transport)
    error = {
        "start": {"line": 1, "offset": 1},
        "end": {"line": 1, "offset": 2},
        "text": "Cannot find name 'y'.",
        "code": 2304,
        "category": "error",
    }

    async def scenario() -> None:
        bridge.did_open(A_URI, "typescript", 1, "x;\n")
        await settle()
        _answer_geterr(transport, A_FILE)
        bridge.did_change(
            A_URI,
            2,
            [
                TextDocumentContentChangePartial(
                    range=Range(start=Position(line=0, character=0), end=Position(line=0, character=1)),
                    text="y",
                )
            ],
        )
        await settle()
        _answer_geterr(transport, A_FILE, semantic=[error])
        await settle()

    asyncio.run(scenario())
    assert transport.last("open")["arguments"]["projectRootPath"] == "/proj"
    assert [(uri, version) for uri, _, version in published] == [(A_URI, 1), (A_URI, 2)]
    assert [diagnostic.code for diagnostic in published[-1][1]] == [2304]


def test_close_clears_published_diagnostics(transport: ScriptedTransport) -> None:
    bridge, published = _bridge(transport, auto_diagnostics=False)

    async def scenario() -> None:
        bridge.did_open(A_URI, "typescript", 1, "")
        bridge.did_close(A_URI)

    asyncio.run(scenario())
    assert published == [(A_URI, [], None)]
    assert transport.commands() == ["open", "close"]


def test_request_diagnostics_for_all_open_documents(transport: ScriptedTransport) -> None:
    bridge, published = _bridge(transport, auto_diagnostics=False)

    async def scenario() -> None:
        bridge.did_open(A_URI, "typescript", 1, "")
        bridge.did_open(B_URI, "typescript", 1, "")
        pending = asyncio.ensure_future(bridge.request_diagnostics())
        await settle()
        geterrs = transport.sent_for("geterr")
        assert [message["arguments"]["files"] for message in geterrs] == [[A_FILE], [B_FILE]]
        for message, file in zip(geterrs, (A_FILE, B_FILE)):
            for event in ("syntaxDiag", "semanticDiag", "suggestionDiag"):
                transport.emit(event, {"file": file, "diagnostics": []})
            transport.emit("requestCompleted", {"request_seq": message["seq"]})
        await pending

    asyncio.run(scenario())
    assert sorted(uri for uri, _, _ in published) == [A_URI, B_URI]


def test_features_require_open_documents(transport: ScriptedTransport) -> None:
    bridge, _ = _bridge(transport, auto_diagnostics=False)
    position = Position(line=0, character=0)
    for call in (
        bridge.completion(A_URI, position),
        bridge.hover(A_URI, position),
        bridge.references(A_URI, position),
        bridge.rename(A_URI, position, "next"),
    ):
        with pytest.raises(InvalidStateError):
            asyncio.run(call)
    stale = CompletionItem(
        label="value",
        data={"uri": A_URI, "file": A_FILE, "line": 1, "offset": 1, "entry_name": "value"},
    )
    with pytest.raises(InvalidStateError):
        asyncio.run(bridge.completion_resolve(stale))
    assert transport.sent == []


def test_shutdown_sends_exit_only_while_connected(transport: ScriptedTransport) -> None:
    bridge, _ = _bridge(transport, auto_diagnostics=False)
    bridge.shutdown()
    assert transport.commands() == ["exit"]
    transport.close()
    bridge.shutdown()
    assert transport.commands() == ["exit"]
