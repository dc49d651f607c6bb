"""Merging tsserver's per-category diagnostic events into LSP notifications.

A ``geterr`` command produces up to three events per file (``syntaxDiag``,
``semanticDiag``, ``suggestionDiag``) and then a ``requestCompleted`` event
naming the ``geterr`` sequence number. Clients expect one
``publishDiagnostics`` per document holding everything, so results are
collected per document and published once every configured category has
reported for the current generation.

Events carry the file but no request tag. tsserver handles commands in order,
so category events are attributed to the oldest ``geterr`` still in flight for
that file; ``requestCompleted`` retires it. A document change bumps the
generation, and events attributed to an older generation are discarded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field

from lsprotocol.types import (
    Diagnostic,
    DiagnosticRelatedInformation,
    DiagnosticSeverity,
    DiagnosticTag,
    Location,
)

from tsbridge.config import DIAGNOSTIC_CATEGORIES
from tsbridge.correlator import CommandCorrelator
from tsbridge.documents import SessionManager
from tsbridge.exceptions import ConnectionClosedError, ProtocolError
from tsbridge.json_types import JSONObject
from tsbridge.positions import path_to_uri, to_range
from tsbridge.protocol import DIAGNOSTIC_EVENT_CATEGORIES, CommandTypes, EventEnvelope, EventTypes

logger = logging.getLogger(__name__)

PublishFn = Callable[[str, list[Diagnostic], int | None], None]

MAX_GETERR_RETRIES = 2

SEVERITIES = {
    "error": DiagnosticSeverity.Error,
    "warning": DiagnosticSeverity.Warning,
    "suggestion": DiagnosticSeverity.Hint,
    "message": DiagnosticSeverity.Information,
}


@dataclass
class _InFlight:
    seq: int
    generation: int
    reported: set[str] = field(default_factory=set)


@dataclass
class DiagnosticsRequestState:
    file: str
    generation: int = 0
    outstanding: set[str] = field(default_factory=set)
    merged: dict[str, list[JSONObject]] = field(default_factory=dict)
    in_flight: list[_InFlight] = field(default_factory=list)
    waiters: list[asyncio.Future] = field(default_factory=list)
    fresh: bool = False
    retries: int = 0


def _related_information(raw: object) -> list[DiagnosticRelatedInformation] | None:
    if not isinstance(raw, list):
        return None
    related: list[DiagnosticRelatedInformation] = []
    for item in raw:
        span = item.get("span") if isinstance(item, dict) else None
        if not isinstance(span, dict) or "file" not in span:
            continue
        related.append(
            DiagnosticRelatedInformation(
                location=Location(
                    uri=path_to_uri(str(span["file"])),
                    range=to_range(span["start"], span["end"]),
                ),
                message=str(item.get("message", "")),
            )
        )
    return related or None


def to_diagnostic(raw: Mapping[str, object]) -> Diagnostic:
    try:
        start, end = raw["start"], raw["end"]
    except KeyError as exc:
        raise ProtocolError(f"diagnostic without span: {raw!r}") from exc
    tags: list[DiagnosticTag] = []
    if raw.get("reportsUnnecessary"):
        tags.append(DiagnosticTag.Unnecessary)
    if raw.get("reportsDeprecated"):
        tags.append(DiagnosticTag.Deprecated)
    code = raw.get("code")
    return Diagnostic(
        range=to_range(start, end),  # type: ignore[arg-type]
        message=str(raw.get("text", "")),
        severity=SEVERITIES.get(str(raw.get("category", "error")), DiagnosticSeverity.Error),
        code=code if isinstance(code, (int, str)) else None,
        source=str(raw.get("source") or "typescript"),
        tags=tags or None,
        related_information=_related_information(raw.get("relatedInformation")),
    )


class DiagnosticsReconciler:
    def __init__(
        self,
        correlator: CommandCorrelator,
        sessions: SessionManager,
        publish: PublishFn,
        *,
        categories: Iterable[str] = DIAGNOSTIC_CATEGORIES,
        delay: float = 0.0,
    ) -> None:
        self._correlator = correlator
        self._sessions = sessions
        self._publish = publish
        self._categories = tuple(categories)
        self._delay = delay
        self._states: dict[str, DiagnosticsRequestState] = {}
        self._uris_by_file: dict[str, str] = {}
        # geterrs still running for documents that were closed, by file.
        self._abandoned: dict[str, list[_InFlight]] = {}
        self._scheduled: dict[str, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task] = set()
        correlator.subscribe(self.handle_event)
        correlator.on_close(self._release_all)
        sessions.on_changed(self.invalidate)
        sessions.on_closed(self.forget)

    def state_for(self, uri: str) -> DiagnosticsRequestState | None:
        return self._states.get(uri)

    async def request_diagnostics(self, uri: str) -> None:
        """Wait until diagnostics for the current content of ``uri`` are published."""
        session = self._sessions.require(uri, "diagnostics")
        state = self._states.get(uri)
        if state is None:
            state = DiagnosticsRequestState(file=session.file)
            self._states[uri] = state
            self._uris_by_file[session.file] = uri
        if state.fresh and not state.outstanding:
            return
        if not state.outstanding:
            self._start_generation(state)
        waiter = asyncio.get_running_loop().create_future()
        state.waiters.append(waiter)
        await waiter

    async def request_all(self) -> None:
        await asyncio.gather(*(self.request_diagnostics(uri) for uri in self._sessions.uris()))

    def _start_generation(self, state: DiagnosticsRequestState) -> None:
        seq = self._correlator.notify(
            CommandTypes.Geterr.value, {"files": [state.file], "delay": 0}
        )
        state.generation += 1
        state.outstanding = set(self._categories)
        state.merged = {}
        state.in_flight.append(_InFlight(seq=seq, generation=state.generation))
        logger.debug("geterr %s generation %d (seq %d)", state.file, state.generation, seq)

    def schedule(self, uri: str) -> None:
        """Request diagnostics for ``uri`` after the debounce delay."""
        handle = self._scheduled.pop(uri, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._scheduled[uri] = loop.call_later(self._delay, self._fire, uri)

    def _fire(self, uri: str) -> None:
        self._scheduled.pop(uri, None)
        if not self._sessions.is_open(uri):
            return
        task = asyncio.ensure_future(self.request_diagnostics(uri))
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning("scheduled diagnostics failed: %s", error)

    def invalidate(self, uri: str) -> None:
        """The content of ``uri`` changed; results in flight for it are stale."""
        for state in self._states.values():
            state.fresh = False
        state = self._states.get(uri)
        if state is None or not state.outstanding:
            return
        if state.waiters:
            self._start_generation(state)
        else:
            state.generation += 1
            state.outstanding.clear()
            state.merged = {}

    def forget(self, uri: str) -> None:
        """``uri`` was closed; nothing more is published for it."""
        handle = self._scheduled.pop(uri, None)
        if handle is not None:
            handle.cancel()
        state = self._states.pop(uri, None)
        if state is None:
            return
        if self._uris_by_file.get(state.file) == uri:
            del self._uris_by_file[state.file]
        if state.in_flight:
            self._abandoned.setdefault(state.file, []).extend(state.in_flight)
        for waiter in state.waiters:
            if not waiter.done():
                waiter.set_result(None)

    def handle_event(self, event: EventEnvelope) -> None:
        if event.event == EventTypes.RequestCompleted.value:
            body = event.body if isinstance(event.body, dict) else {}
            request_seq = body.get("request_seq")
            if isinstance(request_seq, int):
                self._complete(request_seq)
            return
        category = DIAGNOSTIC_EVENT_CATEGORIES.get(event.event)
        if category is None:
            logger.debug("ignoring tsserver event %s", event.event)
            return
        body = event.body if isinstance(event.body, dict) else {}
        file = body.get("file")
        if isinstance(file, str) and self._retire_abandoned_category(file, category):
            logger.debug("dropping %s for %s: document was closed", event.event, file)
            return
        uri = self._uris_by_file.get(file) if isinstance(file, str) else None
        state = self._states.get(uri) if uri is not None else None
        if state is None:
            logger.debug("dropping %s for %s: no diagnostics request", event.event, file)
            return
        entry = next((item for item in state.in_flight if category not in item.reported), None)
        if entry is None:
            logger.debug("dropping unsolicited %s for %s", event.event, file)
            return
        entry.reported.add(category)
        if entry.generation != state.generation or category not in state.outstanding:
            logger.debug(
                "dropping stale %s for %s (generation %d, current %d)",
                event.event,
                file,
                entry.generation,
                state.generation,
            )
            return
        diagnostics = body.get("diagnostics")
        state.merged[category] = list(diagnostics) if isinstance(diagnostics, list) else []
        state.outstanding.discard(category)
        if not state.outstanding:
            self._settle(uri, state)

    def _complete(self, request_seq: int) -> None:
        self._retire_abandoned(request_seq)
        for uri, state in list(self._states.items()):
            entry = next((item for item in state.in_flight if item.seq == request_seq), None)
            if entry is None:
                continue
            # tsserver answers in order, so older geterrs cannot report any more.
            state.in_flight = [item for item in state.in_flight if item.seq > request_seq]
            if entry.generation != state.generation or not state.outstanding:
                return
            missing = ", ".join(sorted(state.outstanding))
            if state.retries >= MAX_GETERR_RETRIES:
                logger.warning("geterr for %s never reported %s; publishing partial", state.file, missing)
                state.outstanding.clear()
                self._settle(uri, state)
                return
            logger.info("geterr for %s ended without %s; requesting again", state.file, missing)
            state.retries += 1
            self._start_generation(state)
            return

    def _retire_abandoned_category(self, file: str, category: str) -> bool:
        entries = self._abandoned.get(file, [])
        entry = next((item for item in entries if category not in item.reported), None)
        if entry is None:
            return False
        entry.reported.add(category)
        return True

    def _retire_abandoned(self, request_seq: int) -> None:
        for file, entries in list(self._abandoned.items()):
            remaining = [item for item in entries if item.seq > request_seq]
            if remaining:
                self._abandoned[file] = remaining
            else:
                del self._abandoned[file]

    def _settle(self, uri: str, state: DiagnosticsRequestState) -> None:
        session = self._sessions.get(uri)
        waiters, state.waiters = state.waiters, []
        merged, state.merged = state.merged, {}
        state.retries = 0
        if session is not None:
            diagnostics: list[Diagnostic] = []
            for category in self._categories:
                for raw in merged.get(category, []):
                    try:
                        diagnostics.append(to_diagnostic(raw))
                    except ProtocolError as exc:
                        logger.error("skipping diagnostic for %s: %s", uri, exc)
            state.fresh = True
            self._publish(uri, diagnostics, session.version)
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _release_all(self, error: ConnectionClosedError) -> None:
        self._abandoned.clear()
        for handle in self._scheduled.values():
            handle.cancel()
        self._scheduled.clear()
        for state in self._states.values():
            state.outstanding.clear()
            waiters, state.waiters = state.waiters, []
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(ConnectionClosedError(str(error)))
