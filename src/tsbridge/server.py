from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from functools import partial

from lsprotocol.types import (
    COMPLETION_ITEM_RESOLVE,
    INITIALIZED,
    SHUTDOWN,
    TEXT_DOCUMENT_COMPLETION,
    TEXT_DOCUMENT_DEFINITION,
    TEXT_DOCUMENT_DID_CHANGE,
    TEXT_DOCUMENT_DID_CLOSE,
    TEXT_DOCUMENT_DID_OPEN,
    TEXT_DOCUMENT_DOCUMENT_SYMBOL,
    TEXT_DOCUMENT_FORMATTING,
    TEXT_DOCUMENT_HOVER,
    TEXT_DOCUMENT_REFERENCES,
    TEXT_DOCUMENT_RENAME,
    TEXT_DOCUMENT_SIGNATURE_HELP,
    CompletionItem,
    CompletionList,
    CompletionOptions,
    CompletionParams,
    DefinitionParams,
    Diagnostic,
    DidChangeTextDocumentParams,
    DidCloseTextDocumentParams,
    DidOpenTextDocumentParams,
    DocumentFormattingParams,
    DocumentSymbolParams,
    Hover,
    HoverParams,
    InitializedParams,
    Location,
    PublishDiagnosticsParams,
    ReferenceParams,
    RenameParams,
    SignatureHelp,
    SignatureHelpOptions,
    SignatureHelpParams,
    SymbolInformation,
    TextEdit,
    WorkspaceEdit,
)
from pygls.lsp.server import LanguageServer

from tsbridge import __version__
from tsbridge.bridge import LspBridge
from tsbridge.config import BridgeConfig
from tsbridge.transport import TsServerProcess

logger = logging.getLogger(__name__)

REQUEST_DIAGNOSTICS = "tsbridge/requestDiagnostics"
COMPLETION_TRIGGERS = [".", '"', "'", "/", "@", "<"]
SIGNATURE_TRIGGERS = ["(", ","]

TransportFactory = Callable[[BridgeConfig, str | None], TsServerProcess]


def _spawn_tsserver(config: BridgeConfig, root_path: str | None) -> TsServerProcess:
    return TsServerProcess.from_config(config, cwd=root_path)


class BridgeLanguageServer(LanguageServer):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.config = BridgeConfig()
        self.transport_factory: TransportFactory = _spawn_tsserver
        self.process: TsServerProcess | None = None
        self.bridge: LspBridge | None = None
        self.start_lock = asyncio.Lock()


server = BridgeLanguageServer("tsbridge", __version__)


def _publish(ls: BridgeLanguageServer, uri: str, diagnostics: list[Diagnostic], version: int | None) -> None:
    ls.text_document_publish_diagnostics(
        PublishDiagnosticsParams(uri=uri, diagnostics=diagnostics, version=version)
    )


async def ensure_bridge(ls: BridgeLanguageServer) -> LspBridge:
    """Start tsserver on first use; later calls return the running bridge."""
    if ls.bridge is not None:
        return ls.bridge
    async with ls.start_lock:
        if ls.bridge is not None:
            return ls.bridge
        root_path = ls.workspace.root_path
        process = ls.transport_factory(ls.config, root_path)
        await process.start()
        bridge = LspBridge(process, partial(_publish, ls), config=ls.config, root_path=root_path)
        await bridge.initialize()
        ls.process = process
        ls.bridge = bridge
        logger.info("tsserver bridge ready (root %s)", root_path)
    return bridge


@server.feature(INITIALIZED)
async def initialized(ls: BridgeLanguageServer, params: InitializedParams) -> None:
    await ensure_bridge(ls)


@server.feature(SHUTDOWN)
async def shutdown(ls: BridgeLanguageServer, params: None = None) -> None:
    bridge, process = ls.bridge, ls.process
    ls.bridge = None
    ls.process = None
    if bridge is not None:
        bridge.shutdown()
    if process is not None:
        await process.stop()


@server.feature(TEXT_DOCUMENT_DID_OPEN)
async def did_open(ls: BridgeLanguageServer, params: DidOpenTextDocumentParams) -> None:
    bridge = await ensure_bridge(ls)
    document = params.text_document
    bridge.did_open(document.uri, document.language_id, document.version, document.text)


@server.feature(TEXT_DOCUMENT_DID_CHANGE)
async def did_change(ls: BridgeLanguageServer, params: DidChangeTextDocumentParams) -> None:
    bridge = await ensure_bridge(ls)
    document = params.text_document
    bridge.did_change(document.uri, document.version, list(params.content_changes))


@server.feature(TEXT_DOCUMENT_DID_CLOSE)
async def did_close(ls: BridgeLanguageServer, params: DidCloseTextDocumentParams) -> None:
    bridge = await ensure_bridge(ls)
    bridge.did_close(params.text_document.uri)


@server.feature(
    TEXT_DOCUMENT_COMPLETION,
    CompletionOptions(trigger_characters=COMPLETION_TRIGGERS, resolve_provider=True),
)
async def completion(ls: BridgeLanguageServer, params: CompletionParams) -> CompletionList:
    bridge = await ensure_bridge(ls)
    return await bridge.completion(params.text_document.uri, params.position)


@server.feature(COMPLETION_ITEM_RESOLVE)
async def completion_resolve(ls: BridgeLanguageServer, item: CompletionItem) -> CompletionItem:
    bridge = await ensure_bridge(ls)
    return await bridge.completion_resolve(item)


@server.feature(TEXT_DOCUMENT_REFERENCES)
async def references(ls: BridgeLanguageServer, params: ReferenceParams) -> list[Location]:
    bridge = await ensure_bridge(ls)
    return await bridge.references(
        params.text_document.uri,
        params.position,
        include_declaration=params.context.include_declaration,
    )


@server.feature(TEXT_DOCUMENT_DOCUMENT_SYMBOL)
async def document_symbol(
    ls: BridgeLanguageServer, params: DocumentSymbolParams
) -> list[SymbolInformation]:
    bridge = await ensure_bridge(ls)
    return await bridge.document_symbol(params.text_document.uri)


@server.feature(
    TEXT_DOCUMENT_SIGNATURE_HELP,
    SignatureHelpOptions(trigger_characters=SIGNATURE_TRIGGERS),
)
async def signature_help(
    ls: BridgeLanguageServer, params: SignatureHelpParams
) -> SignatureHelp | None:
    bridge = await ensure_bridge(ls)
    return await bridge.signature_help(params.text_document.uri, params.position)


@server.feature(TEXT_DOCUMENT_FORMATTING)
async def formatting(ls: BridgeLanguageServer, params: DocumentFormattingParams) -> list[TextEdit]:
    bridge = await ensure_bridge(ls)
    return await bridge.formatting(params.text_document.uri, params.options)


@server.feature(TEXT_DOCUMENT_HOVER)
async def hover(ls: BridgeLanguageServer, params: HoverParams) -> Hover | None:
    bridge = await ensure_bridge(ls)
    return await bridge.hover(params.text_document.uri, params.position)


@server.feature(TEXT_DOCUMENT_DEFINITION)
async def definition(ls: BridgeLanguageServer, params: DefinitionParams) -> list[Location]:
    bridge = await ensure_bridge(ls)
    return await bridge.definition(params.text_document.uri, params.position)


@server.feature(TEXT_DOCUMENT_RENAME)
async def rename(ls: BridgeLanguageServer, params: RenameParams) -> WorkspaceEdit:
    bridge = await ensure_bridge(ls)
    return await bridge.rename(params.text_document.uri, params.position, params.new_name)


def _requested_uri(params: object) -> str | None:
    if isinstance(params, dict):
        uri = params.get("uri")
    else:
        uri = getattr(params, "uri", None)
    return uri if isinstance(uri, str) and uri else None


@server.feature(REQUEST_DIAGNOSTICS)
async def request_diagnostics(ls: BridgeLanguageServer, params: object = None) -> None:
    bridge = await ensure_bridge(ls)
    await bridge.request_diagnostics(_requested_uri(params))


def start(start_fn: Callable[[], None] | None = None) -> None:
    """Serve LSP over stdio."""
    (start_fn or server.start_io)()


if __name__ == "__main__":  # pragma: no cover
    start()  # pragma: no cover
