"""Sequence-number correlation of tsserver commands and responses.

Every command written to tsserver gets the next sequence number of the
connection. Responses name the command they answer in ``request_seq``; they
are matched against the pending table by that number alone, never by arrival
order, because ``geterr`` and friends may finish after later commands.
Anything that is not a response is an event and goes to the subscribers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from tsbridge.exceptions import (
    AnalysisError,
    ConnectionClosedError,
    ProtocolError,
    RequestTimeoutError,
)
from tsbridge.invariants import never
from tsbridge.json_types import JSONObject
from tsbridge.protocol import EventEnvelope, ResponseEnvelope, build_request, parse_message
from tsbridge.transport import Transport

logger = logging.getLogger(__name__)

EventHandler = Callable[[EventEnvelope], None]
CloseListener = Callable[[ConnectionClosedError], None]


@dataclass
class PendingRequest:
    seq: int
    command: str
    created_at: float
    future: asyncio.Future


class CommandCorrelator:
    def __init__(
        self,
        transport: Transport,
        *,
        timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._transport = transport
        self._timeout = timeout
        self._clock = clock
        self._seq = 0
        self._pending: dict[int, PendingRequest] = {}
        self._event_handlers: list[EventHandler] = []
        self._close_listeners: list[CloseListener] = []
        self._closed: ConnectionClosedError | None = None
        transport.on_message(self.handle_message)
        transport.on_close(self.handle_close)

    @property
    def closed(self) -> bool:
        return self._closed is not None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def subscribe(self, handler: EventHandler) -> None:
        self._event_handlers.append(handler)

    def on_close(self, listener: CloseListener) -> None:
        self._close_listeners.append(listener)

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _write(self, seq: int, command: str, arguments: JSONObject | None) -> None:
        if self._closed is not None:
            raise ConnectionClosedError(str(self._closed))
        self._transport.send(build_request(seq, command, arguments))

    def notify(self, command: str, arguments: JSONObject | None = None) -> int:
        """Write a command nobody waits on; returns its sequence number."""
        seq = self._next_seq()
        self._write(seq, command, arguments)
        logger.debug("-> %s (seq %d, no response expected)", command, seq)
        return seq

    async def request(
        self,
        command: str,
        arguments: JSONObject | None = None,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Send ``command`` and wait for the body of its response."""
        seq = self._next_seq()
        if seq in self._pending:
            never("sequence number already pending", seq=seq, command=command)
        future = asyncio.get_running_loop().create_future()
        self._pending[seq] = PendingRequest(seq, command, self._clock(), future)
        try:
            self._write(seq, command, arguments)
        except BaseException:
            self._pending.pop(seq, None)
            raise
        logger.debug("-> %s (seq %d)", command, seq)
        window = timeout if timeout is not None else self._timeout
        try:
            if window is None:
                return await future
            return await asyncio.wait_for(future, timeout=window)
        except asyncio.TimeoutError:
            logger.warning("tsserver command %s (seq %d) timed out after %gs", command, seq, window)
            raise RequestTimeoutError(command, seq, window) from None
        finally:
            self._pending.pop(seq, None)

    def handle_message(self, message: JSONObject) -> None:
        try:
            envelope = parse_message(message)
        except ProtocolError as exc:
            logger.error("dropping tsserver message: %s", exc)
            return
        if isinstance(envelope, ResponseEnvelope):
            self._resolve(envelope)
            return
        logger.debug("<- event %s", envelope.event)
        for handler in list(self._event_handlers):
            handler(envelope)

    def _resolve(self, response: ResponseEnvelope) -> None:
        pending = self._pending.pop(response.request_seq, None)
        if pending is None:
            logger.warning(
                "dropping %s response for unknown request seq %d",
                response.command or "tsserver",
                response.request_seq,
            )
            return
        if pending.future.done():
            logger.debug("dropping late response for seq %d", pending.seq)
            return
        elapsed = self._clock() - pending.created_at
        logger.debug("<- %s (seq %d) in %.3fs", pending.command, pending.seq, elapsed)
        if response.success:
            pending.future.set_result(response.body)
        else:
            message = response.message or f"{pending.command} failed"
            pending.future.set_exception(AnalysisError(pending.command, message))

    def handle_close(self, error: BaseException | None = None) -> None:
        if self._closed is not None:
            return
        reason = str(error) if error is not None else ""
        closed = ConnectionClosedError(reason or "tsserver connection closed")
        self._closed = closed
        pending = list(self._pending.values())
        self._pending.clear()
        if pending:
            logger.error("rejecting %d pending tsserver commands: %s", len(pending), closed)
        for entry in pending:
            if not entry.future.done():
                entry.future.set_exception(ConnectionClosedError(str(closed)))
        for listener in list(self._close_listeners):
            listener(closed)
