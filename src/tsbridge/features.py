"""LSP capability handlers expressed as tsserver commands.

Each handler turns one LSP call into one or more tsserver commands through the
correlator and reshapes the body it gets back. Nothing here interprets code;
results are only re-enveloped (field names, coordinates, edit shapes).
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Optional

from lsprotocol.types import (
    CompletionItem,
    CompletionItemKind,
    CompletionItemTag,
    CompletionList,
    FormattingOptions,
    Hover,
    Location,
    MarkupContent,
    MarkupKind,
    ParameterInformation,
    Position,
    SignatureHelp,
    SignatureInformation,
    SymbolInformation,
    SymbolKind,
    TextEdit,
    WorkspaceEdit,
)
from pydantic import BaseModel, ValidationError

from tsbridge.correlator import CommandCorrelator
from tsbridge.documents import DocumentSession
from tsbridge.exceptions import AnalysisError, InvalidStateError, ProtocolError
from tsbridge.json_types import JSONObject
from tsbridge.positions import (
    file_location,
    path_to_uri,
    span_range,
    span_to_location,
    to_location,
    to_range,
)
from tsbridge.protocol import CommandTypes
from tsbridge.text_edits import document_end, sort_edits

NO_CONTENT = "No content available."

_PREFIX_RE = re.compile(r"[A-Za-z_$][\w$]*$")

COMPLETION_KINDS: dict[str, CompletionItemKind] = {
    "primitive type": CompletionItemKind.Keyword,
    "keyword": CompletionItemKind.Keyword,
    "var": CompletionItemKind.Variable,
    "local var": CompletionItemKind.Variable,
    "let": CompletionItemKind.Variable,
    "parameter": CompletionItemKind.Variable,
    "alias": CompletionItemKind.Variable,
    "const": CompletionItemKind.Constant,
    "property": CompletionItemKind.Field,
    "getter": CompletionItemKind.Property,
    "setter": CompletionItemKind.Property,
    "method": CompletionItemKind.Method,
    "construct": CompletionItemKind.Method,
    "call": CompletionItemKind.Method,
    "index": CompletionItemKind.Method,
    "function": CompletionItemKind.Function,
    "local function": CompletionItemKind.Function,
    "constructor": CompletionItemKind.Constructor,
    "class": CompletionItemKind.Class,
    "local class": CompletionItemKind.Class,
    "interface": CompletionItemKind.Interface,
    "type": CompletionItemKind.Class,
    "type parameter": CompletionItemKind.TypeParameter,
    "enum": CompletionItemKind.Enum,
    "enum member": CompletionItemKind.EnumMember,
    "module": CompletionItemKind.Module,
    "external module name": CompletionItemKind.Module,
    "script": CompletionItemKind.File,
    "directory": CompletionItemKind.Folder,
    "string": CompletionItemKind.Constant,
}

SYMBOL_KINDS: dict[str, SymbolKind] = {
    "module": SymbolKind.Module,
    "external module name": SymbolKind.Module,
    "script": SymbolKind.File,
    "class": SymbolKind.Class,
    "local class": SymbolKind.Class,
    "interface": SymbolKind.Interface,
    "type": SymbolKind.Class,
    "enum": SymbolKind.Enum,
    "enum member": SymbolKind.EnumMember,
    "method": SymbolKind.Method,
    "property": SymbolKind.Property,
    "getter": SymbolKind.Property,
    "setter": SymbolKind.Property,
    "constructor": SymbolKind.Constructor,
    "function": SymbolKind.Function,
    "local function": SymbolKind.Function,
    "const": SymbolKind.Constant,
    "var": SymbolKind.Variable,
    "local var": SymbolKind.Variable,
    "let": SymbolKind.Variable,
    "type parameter": SymbolKind.TypeParameter,
}


class CompletionData(BaseModel):
    """Handle kept in ``CompletionItem.data`` to fetch details later."""

    uri: str
    file: str
    line: int
    offset: int
    entry_name: str
    source: Optional[str] = None


def display_text(parts: object) -> str:
    if isinstance(parts, str):
        return parts
    if isinstance(parts, list):
        return "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))
    return ""


def _render_tags(tags: object) -> str:
    if not isinstance(tags, list):
        return ""
    lines = []
    for tag in tags:
        if not isinstance(tag, dict):
            continue
        text = display_text(tag.get("text"))
        lines.append(f"*@{tag.get('name', '')}*" + (f" {text}" if text else ""))
    return "\n\n".join(lines)


def _markdown(*sections: str) -> MarkupContent | None:
    value = "\n\n".join(section for section in sections if section)
    if not value:
        return None
    return MarkupContent(kind=MarkupKind.Markdown, value=value)


def word_prefix(session: DocumentSession, position: Position) -> str:
    offset = session.document.offset_at_position(position)
    line_start = session.text.rfind("\n", 0, offset) + 1
    match = _PREFIX_RE.search(session.text[line_start:offset])
    return match.group(0) if match else ""


def to_completion_item(entry: Mapping[str, object], uri: str, location: JSONObject) -> CompletionItem:
    name = str(entry.get("name", ""))
    insert_text = entry.get("insertText")
    item = CompletionItem(
        label=name,
        kind=COMPLETION_KINDS.get(str(entry.get("kind", "")), CompletionItemKind.Property),
        sort_text=str(entry["sortText"]) if entry.get("sortText") is not None else None,
        insert_text=str(insert_text) if insert_text else None,
    )
    span = entry.get("replacementSpan")
    if isinstance(span, dict):
        item.text_edit = TextEdit(range=span_range(span), new_text=str(insert_text or name))
    if "deprecated" in str(entry.get("kindModifiers", "")).split(","):
        item.tags = [CompletionItemTag.Deprecated]
    source = entry.get("source")
    item.data = CompletionData(
        uri=uri,
        file=str(location["file"]),
        line=int(location["line"]),  # type: ignore[arg-type]
        offset=int(location["offset"]),  # type: ignore[arg-type]
        entry_name=name,
        source=str(source) if source else None,
    ).model_dump(exclude_none=True)
    return item


async def completion(
    correlator: CommandCorrelator, session: DocumentSession, position: Position
) -> CompletionList:
    arguments = file_location(session.file, position)
    prefix = word_prefix(session, position)
    if prefix:
        arguments["prefix"] = prefix
    body = await correlator.request(CommandTypes.Completions.value, arguments)
    entries = body if isinstance(body, list) else []
    items = [to_completion_item(entry, session.uri, arguments) for entry in entries if isinstance(entry, dict)]
    return CompletionList(is_incomplete=False, items=items)


def completion_handle(item: CompletionItem) -> CompletionData:
    try:
        return CompletionData.model_validate(item.data)
    except ValidationError as exc:
        raise InvalidStateError(f"completion item {item.label!r} has no resolvable handle") from exc


async def completion_resolve(
    correlator: CommandCorrelator, item: CompletionItem, handle: CompletionData
) -> CompletionItem:
    entry_name: object = handle.entry_name
    if handle.source:
        entry_name = {"name": handle.entry_name, "source": handle.source}
    body = await correlator.request(
        CommandTypes.CompletionDetails.value,
        {
            "file": handle.file,
            "line": handle.line,
            "offset": handle.offset,
            "entryNames": [entry_name],
        },
    )
    details = body[0] if isinstance(body, list) and body else None
    if not isinstance(details, dict):
        return item
    detail = display_text(details.get("displayParts"))
    if detail:
        item.detail = detail
    documentation = _markdown(
        display_text(details.get("documentation")), _render_tags(details.get("tags"))
    )
    if documentation is not None:
        item.documentation = documentation
    return item


async def references(
    correlator: CommandCorrelator,
    file: str,
    position: Position,
    *,
    include_declaration: bool = True,
) -> list[Location]:
    body = await correlator.request(CommandTypes.References.value, file_location(file, position))
    refs = body.get("refs", []) if isinstance(body, dict) else []
    return [
        span_to_location(ref)
        for ref in refs
        if isinstance(ref, dict) and (include_declaration or not ref.get("isDefinition"))
    ]


def _flatten_navtree(
    item: Mapping[str, object],
    uri: str,
    container: str | None,
    out: list[SymbolInformation],
) -> None:
    text = str(item.get("text", ""))
    children = item.get("childItems") or []
    spans = item.get("spans") or []
    next_container = container
    if text != "<global>" and isinstance(spans, list) and spans:
        out.append(
            SymbolInformation(
                name=text,
                kind=SYMBOL_KINDS.get(str(item.get("kind", "")), SymbolKind.Variable),
                location=Location(uri=uri, range=span_range(spans[0])),
                container_name=container,
            )
        )
        next_container = text
    if isinstance(children, list):
        for child in children:
            if isinstance(child, dict):
                _flatten_navtree(child, uri, next_container, out)


async def document_symbol(
    correlator: CommandCorrelator, session: DocumentSession
) -> list[SymbolInformation]:
    tree = await correlator.request(CommandTypes.NavTree.value, {"file": session.file})
    symbols: list[SymbolInformation] = []
    if isinstance(tree, dict):
        _flatten_navtree(tree, session.uri, None, symbols)
    return symbols


def _signature(item: Mapping[str, object]) -> SignatureInformation:
    parameters = [
        ParameterInformation(
            label=display_text(parameter.get("displayParts")),
            documentation=display_text(parameter.get("documentation")) or None,
        )
        for parameter in item.get("parameters") or []
        if isinstance(parameter, dict)
    ]
    separator = display_text(item.get("separatorDisplayParts"))
    label = (
        display_text(item.get("prefixDisplayParts"))
        + separator.join(parameter.label for parameter in parameters)  # type: ignore[misc]
        + display_text(item.get("suffixDisplayParts"))
    )
    return SignatureInformation(
        label=label,
        documentation=_markdown(
            display_text(item.get("documentation")), _render_tags(item.get("tags"))
        ),
        parameters=parameters,
    )


async def signature_help(
    correlator: CommandCorrelator, file: str, position: Position
) -> SignatureHelp | None:
    try:
        body = await correlator.request(
            CommandTypes.SignatureHelp.value, file_location(file, position)
        )
    except AnalysisError as exc:
        if exc.message == NO_CONTENT:
            return None
        raise
    if not isinstance(body, dict) or not body.get("items"):
        return None
    return SignatureHelp(
        signatures=[_signature(item) for item in body["items"] if isinstance(item, dict)],
        active_signature=int(body.get("selectedItemIndex", 0)),
        active_parameter=int(body.get("argumentIndex", 0)),
    )


async def formatting(
    correlator: CommandCorrelator, session: DocumentSession, options: FormattingOptions
) -> list[TextEdit]:
    text = session.text
    await correlator.request(
        CommandTypes.Configure.value,
        {
            "file": session.file,
            "formatOptions": {
                "tabSize": options.tab_size,
                "indentSize": options.tab_size,
                "convertTabsToSpaces": options.insert_spaces,
                "newLineCharacter": "\r\n" if "\r\n" in text else "\n",
            },
        },
    )
    end = to_location(document_end(text))
    body = await correlator.request(
        CommandTypes.Format.value,
        {
            "file": session.file,
            "line": 1,
            "offset": 1,
            "endLine": end["line"],
            "endOffset": end["offset"],
        },
    )
    edits = [
        TextEdit(range=to_range(edit["start"], edit["end"]), new_text=str(edit.get("newText", "")))
        for edit in (body if isinstance(body, list) else [])
        if isinstance(edit, dict)
    ]
    return sort_edits(edits)


async def hover(correlator: CommandCorrelator, file: str, position: Position) -> Hover | None:
    try:
        body = await correlator.request(CommandTypes.Quickinfo.value, file_location(file, position))
    except AnalysisError as exc:
        if exc.message == NO_CONTENT:
            return None
        raise
    if not isinstance(body, dict):
        return None
    display = display_text(body.get("displayString"))
    contents = _markdown(
        f"```typescript\n{display}\n```" if display else "",
        display_text(body.get("documentation")),
        _render_tags(body.get("tags")),
    )
    if contents is None:
        return None
    hover_range = None
    if isinstance(body.get("start"), dict) and isinstance(body.get("end"), dict):
        hover_range = to_range(body["start"], body["end"])
    return Hover(contents=contents, range=hover_range)


async def definition(
    correlator: CommandCorrelator, file: str, position: Position
) -> list[Location]:
    body = await correlator.request(CommandTypes.Definition.value, file_location(file, position))
    spans = body if isinstance(body, list) else []
    return [span_to_location(span) for span in spans if isinstance(span, dict)]


async def rename(
    correlator: CommandCorrelator, file: str, position: Position, new_name: str
) -> WorkspaceEdit:
    arguments = file_location(file, position)
    arguments.update({"findInComments": False, "findInStrings": False})
    body = await correlator.request(CommandTypes.Rename.value, arguments)
    body = body if isinstance(body, dict) else {}
    info = body.get("info") if isinstance(body.get("info"), dict) else {}
    if not info.get("canRename"):
        raise AnalysisError(
            CommandTypes.Rename.value,
            str(info.get("localizedErrorMessage") or "You cannot rename this element."),
        )
    changes: dict[str, list[TextEdit]] = {}
    for group in body.get("locs") or []:
        if not isinstance(group, dict) or not isinstance(group.get("file"), str):
            raise ProtocolError(f"malformed rename location group: {group!r}")
        edits = changes.setdefault(path_to_uri(group["file"]), [])
        for loc in group.get("locs") or []:
            if not isinstance(loc, dict):
                continue
            edits.append(
                TextEdit(
                    range=span_range(loc),
                    new_text=f"{loc.get('prefixText', '')}{new_name}{loc.get('suffixText', '')}",
                )
            )
    return WorkspaceEdit(changes=changes)
