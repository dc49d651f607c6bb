from __future__ import annotations

import logging

from lsprotocol.types import (
    CompletionItem,
    CompletionList,
    FormattingOptions,
    Hover,
    Location,
    Position,
    SignatureHelp,
    SymbolInformation,
    TextDocumentContentChangeEvent,
    TextEdit,
    WorkspaceEdit,
)

from tsbridge import features
from tsbridge.config import BridgeConfig
from tsbridge.correlator import CommandCorrelator
from tsbridge.diagnostics import DiagnosticsReconciler, PublishFn
from tsbridge.documents import SessionManager
from tsbridge.protocol import CommandTypes
from tsbridge.transport import Transport

logger = logging.getLogger(__name__)

HOST_INFO = "tsbridge"
PREFERENCES = {
    "includeCompletionsWithInsertText": True,
    "providePrefixAndSuffixTextForRename": True,
    "allowRenameOfImportPath": True,
}


class LspBridge:
    """LSP document and feature operations backed by one tsserver connection."""

    def __init__(
        self,
        transport: Transport,
        publish: PublishFn,
        *,
        config: BridgeConfig | None = None,
        root_path: str | None = None,
        auto_diagnostics: bool = True,
    ) -> None:
        self.config = config or BridgeConfig()
        self._publish = publish
        self._auto_diagnostics = auto_diagnostics
        self.correlator = CommandCorrelator(transport, timeout=self.config.request_timeout)
        self.sessions = SessionManager(
            self.correlator,
            change_sync=self.config.change_sync,
            project_root=root_path,
        )
        self.diagnostics = DiagnosticsReconciler(
            self.correlator,
            self.sessions,
            publish,
            categories=self.config.diagnostic_categories,
            delay=self.config.diagnostics_delay,
        )

    async def initialize(self) -> None:
        await self.correlator.request(
            CommandTypes.Configure.value,
            {"hostInfo": HOST_INFO, "preferences": dict(PREFERENCES)},
        )

    def shutdown(self) -> None:
        if not self.correlator.closed:
            self.correlator.notify(CommandTypes.Exit.value)

    def did_open(self, uri: str, language_id: str, version: int, text: str) -> None:
        self.sessions.open(uri, language_id, version, text)
        if self._auto_diagnostics:
            self.diagnostics.schedule(uri)

    def did_change(
        self,
        uri: str,
        version: int,
        content_changes: list[TextDocumentContentChangeEvent],
    ) -> None:
        self.sessions.change(uri, version, content_changes)
        if self._auto_diagnostics:
            self.diagnostics.schedule(uri)

    def did_close(self, uri: str) -> None:
        self.sessions.close(uri)
        # Clear what the client shows for a document that is gone.
        self._publish(uri, [], None)

    async def request_diagnostics(self, uri: str | None = None) -> None:
        if uri is None:
            await self.diagnostics.request_all()
        else:
            await self.diagnostics.request_diagnostics(uri)

    async def completion(self, uri: str, position: Position) -> CompletionList:
        session = self.sessions.require(uri, "completion")
        return await features.completion(self.correlator, session, position)

    async def completion_resolve(self, item: CompletionItem) -> CompletionItem:
        handle = features.completion_handle(item)
        self.sessions.require(handle.uri, "completion resolve")
        return await features.completion_resolve(self.correlator, item, handle)

    async def references(
        self, uri: str, position: Position, *, include_declaration: bool = True
    ) -> list[Location]:
        file = self.sessions.file_for(uri, "references")
        return await features.references(
            self.correlator, file, position, include_declaration=include_declaration
        )

    async def document_symbol(self, uri: str) -> list[SymbolInformation]:
        session = self.sessions.require(uri, "document symbol")
        return await features.document_symbol(self.correlator, session)

    async def signature_help(self, uri: str, position: Position) -> SignatureHelp | None:
        file = self.sessions.file_for(uri, "signature help")
        return await features.signature_help(self.correlator, file, position)

    async def formatting(self, uri: str, options: FormattingOptions) -> list[TextEdit]:
        session = self.sessions.require(uri, "formatting")
        return await features.formatting(self.correlator, session, options)

    async def hover(self, uri: str, position: Position) -> Hover | None:
        file = self.sessions.file_for(uri, "hover")
        return await features.hover(self.correlator, file, position)

    async def definition(self, uri: str, position: Position) -> list[Location]:
        file = self.sessions.file_for(uri, "definition")
        return await features.definition(self.correlator, file, position)

    async def rename(self, uri: str, position: Position, new_name: str) -> WorkspaceEdit:
        file = self.sessions.file_for(uri, "rename")
        return await features.rename(self.correlator, file, position, new_name)
