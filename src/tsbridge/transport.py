from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from collections.abc import Callable, Sequence
from typing import Protocol

from tsbridge.config import BridgeConfig
from tsbridge.exceptions import ConnectionClosedError, ProtocolError
from tsbridge.invariants import require_not_none
from tsbridge.json_types import JSONObject

logger = logging.getLogger(__name__)

MessageHandler = Callable[[JSONObject], None]
CloseHandler = Callable[[BaseException | None], None]


class Transport(Protocol):
    """Duplex channel to tsserver delivering whole messages in arrival order."""

    def send(self, message: JSONObject) -> None: ...

    def on_message(self, handler: MessageHandler) -> None: ...

    def on_close(self, handler: CloseHandler) -> None: ...


def encode_command(message: JSONObject) -> bytes:
    # tsserver reads one command per line.
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


async def read_message(reader: asyncio.StreamReader) -> JSONObject | None:
    """Read one ``Content-Length`` framed message; ``None`` on clean EOF."""
    try:
        header = await reader.readuntil(b"\r\n\r\n")
    except asyncio.IncompleteReadError as exc:
        if not exc.partial.strip():
            return None
        raise ConnectionClosedError("tsserver stream closed inside a header") from exc
    length = 0
    for line in header.split(b"\r\n"):
        if line.lower().startswith(b"content-length:"):
            try:
                length = int(line.split(b":", 1)[1].strip())
            except ValueError:
                length = 0
            break
    if length <= 0:
        raise ProtocolError("Invalid tsserver Content-Length")
    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise ConnectionClosedError("tsserver stream closed inside a message body") from exc
    try:
        message = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ProtocolError(f"Invalid tsserver JSON: {exc}") from exc
    if not isinstance(message, dict):
        raise ProtocolError("Invalid tsserver message payload")
    return message


def tsserver_command(config: BridgeConfig) -> list[str]:
    executable = shutil.which(config.tsserver_path) or config.tsserver_path
    command = [executable, *config.tsserver_args]
    if config.tsserver_log_file:
        command += ["--logFile", config.tsserver_log_file]
        command += ["--logVerbosity", config.tsserver_log_verbosity or "normal"]
    return command


class TsServerProcess:
    """tsserver child process speaking the line-in, framed-out protocol."""

    def __init__(
        self,
        command: Sequence[str],
        *,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
        process_factory: Callable[..., object] = asyncio.create_subprocess_exec,
    ) -> None:
        if not command:
            raise ValueError("tsserver command must not be empty")
        self.command = list(command)
        self.cwd = cwd
        self.env = env
        self._process_factory = process_factory
        self._process: asyncio.subprocess.Process | None = None
        self._message_handlers: list[MessageHandler] = []
        self._close_handlers: list[CloseHandler] = []
        self._tasks: list[asyncio.Task] = []
        self._closed = False

    @classmethod
    def from_config(cls, config: BridgeConfig, *, cwd: str | None = None) -> "TsServerProcess":
        return cls(tsserver_command(config), cwd=cwd)

    @property
    def closed(self) -> bool:
        return self._closed

    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_close(self, handler: CloseHandler) -> None:
        self._close_handlers.append(handler)

    async def start(self) -> None:
        if self._process is not None:
            return
        env = dict(os.environ)
        env.update(self.env or {})
        logger.info("starting tsserver: %s", " ".join(self.command))
        try:
            self._process = await self._process_factory(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.cwd,
                env=env,
            )
        except OSError as exc:
            self._closed = True
            raise ConnectionClosedError(f"failed to start tsserver: {exc}") from exc
        self._tasks = [
            asyncio.create_task(self._read_loop()),
            asyncio.create_task(self._drain_stderr()),
        ]

    def send(self, message: JSONObject) -> None:
        process = self._process
        if self._closed or process is None or process.stdin is None:
            raise ConnectionClosedError("tsserver is not running")
        if process.stdin.is_closing():
            raise ConnectionClosedError("tsserver stdin is closed")
        process.stdin.write(encode_command(message))

    async def _read_loop(self) -> None:
        process = self._process
        stdout = require_not_none(process and process.stdout, reason="tsserver stdout missing")
        error: BaseException | None = None
        try:
            while True:
                try:
                    message = await read_message(stdout)
                except ProtocolError as exc:
                    logger.error("dropping unreadable tsserver output: %s", exc)
                    continue
                if message is None:
                    break
                for handler in list(self._message_handlers):
                    try:
                        handler(message)
                    except Exception:
                        logger.exception("tsserver message handler failed")
        except ConnectionClosedError as exc:
            error = exc
        finally:
            returncode = await process.wait()
            if error is None:
                error = ConnectionClosedError(f"tsserver exited with code {returncode}")
            self._mark_closed(error)

    async def _drain_stderr(self) -> None:
        process = self._process
        stderr = require_not_none(process and process.stderr, reason="tsserver stderr missing")
        while True:
            line = await stderr.readline()
            if not line:
                return
            logger.debug("tsserver stderr: %s", line.decode("utf-8", errors="replace").rstrip())

    def _mark_closed(self, error: BaseException | None) -> None:
        if self._closed:
            return
        self._closed = True
        logger.warning("tsserver connection closed: %s", error)
        for handler in list(self._close_handlers):
            handler(error)

    async def stop(self, timeout: float = 5.0) -> None:
        process = self._process
        if process is None:
            return
        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
        for task in self._tasks:
            if not task.done():
                task.cancel()
        self._mark_closed(None)
