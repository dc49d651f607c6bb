"""Per-document sessions and their mirroring into tsserver.

LSP clients open, change and close documents; tsserver wants ``open`` with
the full text, then ``change`` commands carrying 1-based ranges applied in
order, then ``close``. The manager keeps the text of each open document so a
whole-document replacement can be expressed as a range over the text tsserver
currently holds.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

from lsprotocol.types import Position, Range, TextDocumentContentChangeEvent
from pygls.workspace import TextDocument

from tsbridge.correlator import CommandCorrelator
from tsbridge.exceptions import InvalidStateError
from tsbridge.positions import to_location, uri_to_path
from tsbridge.protocol import CommandTypes
from tsbridge.text_edits import document_end

logger = logging.getLogger(__name__)

SCRIPT_KINDS = {
    "typescript": "TS",
    "typescriptreact": "TSX",
    "javascript": "JS",
    "javascriptreact": "JSX",
}

DocumentListener = Callable[[str], None]


class SessionState(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


@dataclass
class DocumentSession:
    uri: str
    language_id: str
    version: int
    document: TextDocument
    state: SessionState = SessionState.OPEN

    @property
    def file(self) -> str:
        return uri_to_path(self.uri)

    @property
    def text(self) -> str:
        return self.document.source


def script_kind(language_id: str) -> str:
    return SCRIPT_KINDS.get(language_id, "TS")


class SessionManager:
    def __init__(
        self,
        correlator: CommandCorrelator,
        *,
        change_sync: str = "incremental",
        project_root: str | None = None,
    ) -> None:
        self._correlator = correlator
        self._change_sync = change_sync
        self._project_root = project_root
        self._sessions: dict[str, DocumentSession] = {}
        self._changed_listeners: list[DocumentListener] = []
        self._closed_listeners: list[DocumentListener] = []

    def on_changed(self, listener: DocumentListener) -> None:
        self._changed_listeners.append(listener)

    def on_closed(self, listener: DocumentListener) -> None:
        self._closed_listeners.append(listener)

    def get(self, uri: str) -> DocumentSession | None:
        return self._sessions.get(uri)

    def is_open(self, uri: str) -> bool:
        return uri in self._sessions

    def uris(self) -> list[str]:
        return list(self._sessions)

    def require(self, uri: str, operation: str) -> DocumentSession:
        session = self._sessions.get(uri)
        if session is None:
            raise InvalidStateError(f"{operation} on {uri} which is not open")
        return session

    def file_for(self, uri: str, operation: str = "request") -> str:
        return self.require(uri, operation).file

    def open(self, uri: str, language_id: str, version: int, content: str) -> DocumentSession:
        reopened = uri in self._sessions
        if reopened:
            logger.info("re-opening %s; previous session replaced", uri)
        document = TextDocument(uri, source=content, version=version, language_id=language_id)
        session = DocumentSession(uri=uri, language_id=language_id, version=version, document=document)
        self._sessions[uri] = session
        arguments = {
            "file": session.file,
            "fileContent": content,
            "scriptKindName": script_kind(language_id),
        }
        if self._project_root:
            arguments["projectRootPath"] = self._project_root
        self._correlator.notify(CommandTypes.Open.value, arguments)
        if reopened:
            # Same effect on listeners as a whole-document change.
            for listener in list(self._changed_listeners):
                listener(uri)
        return session

    def change(
        self,
        uri: str,
        new_version: int,
        content_changes: Sequence[TextDocumentContentChangeEvent],
    ) -> DocumentSession:
        session = self.require(uri, "change")
        if new_version <= session.version:
            logger.warning(
                "%s version went from %d to %d", uri, session.version, new_version
            )
        session.version = new_version
        session.document.version = new_version
        try:
            if self._change_sync == "full":
                self._change_full(session, content_changes)
            else:
                self._change_incremental(session, content_changes)
        finally:
            for listener in list(self._changed_listeners):
                listener(uri)
        return session

    def _change_incremental(
        self, session: DocumentSession, content_changes: Iterable[TextDocumentContentChangeEvent]
    ) -> None:
        for change in content_changes:
            target = getattr(change, "range", None)
            if target is None:
                target = Range(start=Position(line=0, character=0), end=document_end(session.text))
            session.document.apply_change(change)
            self._send_change(session.file, target, change.text)

    def _change_full(
        self, session: DocumentSession, content_changes: Iterable[TextDocumentContentChangeEvent]
    ) -> None:
        previous_end = document_end(session.text)
        for change in content_changes:
            session.document.apply_change(change)
        whole = Range(start=Position(line=0, character=0), end=previous_end)
        self._send_change(session.file, whole, session.text)

    def _send_change(self, file: str, target: Range, text: str) -> None:
        start = to_location(target.start)
        end = to_location(target.end)
        self._correlator.notify(
            CommandTypes.Change.value,
            {
                "file": file,
                "line": start["line"],
                "offset": start["offset"],
                "endLine": end["line"],
                "endOffset": end["offset"],
                "insertString": text,
            },
        )

    def close(self, uri: str) -> None:
        session = self.require(uri, "close")
        session.state = SessionState.CLOSED
        del self._sessions[uri]
        for listener in list(self._closed_listeners):
            listener(uri)
        self._correlator.notify(CommandTypes.Close.value, {"file": session.file})
