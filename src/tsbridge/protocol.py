"""tsserver wire protocol: command names, event names and envelopes."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ValidationError

from tsbridge.exceptions import ProtocolError
from tsbridge.json_types import JSONObject


class CommandTypes(str, Enum):
    Open = "open"
    Change = "change"
    Close = "close"
    Configure = "configure"
    Completions = "completions"
    CompletionDetails = "completionEntryDetails"
    References = "references"
    NavTree = "navtree"
    SignatureHelp = "signatureHelp"
    Format = "format"
    Quickinfo = "quickinfo"
    Definition = "definition"
    Rename = "rename"
    Geterr = "geterr"
    Exit = "exit"


class EventTypes(str, Enum):
    SyntaxDiag = "syntaxDiag"
    SemanticDiag = "semanticDiag"
    SuggestionDiag = "suggestionDiag"
    RequestCompleted = "requestCompleted"


DIAGNOSTIC_EVENT_CATEGORIES: dict[str, str] = {
    EventTypes.SyntaxDiag.value: "syntax",
    EventTypes.SemanticDiag.value: "semantic",
    EventTypes.SuggestionDiag.value: "suggestion",
}


class RequestEnvelope(BaseModel):
    seq: int
    type: Literal["request"] = "request"
    command: str
    arguments: Optional[Any] = None


class ResponseEnvelope(BaseModel):
    seq: int = 0
    type: Literal["response"]
    command: str = ""
    request_seq: int
    success: bool
    message: Optional[str] = None
    body: Optional[Any] = None


class EventEnvelope(BaseModel):
    seq: int = 0
    type: Literal["event"]
    event: str
    body: Optional[Any] = None


InboundEnvelope = Union[ResponseEnvelope, EventEnvelope]


def build_request(seq: int, command: str, arguments: JSONObject | None) -> JSONObject:
    envelope = RequestEnvelope(seq=seq, command=command, arguments=arguments)
    return envelope.model_dump(exclude_none=True)


def parse_message(message: object) -> InboundEnvelope:
    """Validate one deframed tsserver message.

    Raises ProtocolError for anything that is neither a response nor an event.
    """
    if not isinstance(message, dict):
        raise ProtocolError(f"tsserver message must be an object, got {type(message).__name__}")
    kind = message.get("type")
    try:
        if kind == "response":
            return ResponseEnvelope.model_validate(message)
        if kind == "event":
            return EventEnvelope.model_validate(message)
    except ValidationError as exc:
        raise ProtocolError(f"malformed tsserver {kind}: {exc}") from exc
    raise ProtocolError(f"unexpected tsserver message type: {kind!r}")
