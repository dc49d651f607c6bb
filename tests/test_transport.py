from __future__ import annotations

import asyncio
import json

import pytest

from tests.transport_helpers import frame, settle
from tsbridge.config import BridgeConfig
from tsbridge.exceptions import ConnectionClosedError, ProtocolError
from tsbridge.transport import TsServerProcess, encode_command, read_message, tsserver_command


async def _read(data: bytes, *, eof: bool = True):
    reader = asyncio.StreamReader()
    reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return await read_message(reader)


def test_encode_command_is_one_compact_line() -> None:
    encoded = encode_command({"seq": 1, "type": "request", "command": "exit"})
    assert encoded.endswith(b"\n")
    assert encoded.count(b"\n") == 1
    assert json.loads(encoded) == {"seq": 1, "type": "request", "command": "exit"}


def test_read_message_returns_framed_payload_then_none_at_eof() -> None:
    async def scenario() -> list[object]:
        reader = asyncio.StreamReader()
        reader.feed_data(frame({"seq": 0, "type": "event", "event": "typingsInstallerPid"}))
        reader.feed_eof()
        return [await read_message(reader), await read_message(reader)]

    first, second = asyncio.run(scenario())
    assert first == {"seq": 0, "type": "event", "event": "typingsInstallerPid"}
    assert second is None


def test_read_message_counts_bytes_not_characters() -> None:
    message = {"type": "event", "event": "semanticDiag", "body": {"text": "café \U0001F600"}}
    assert asyncio.run(_read(frame(message))) == message


def test_read_message_truncated_body_closes_connection() -> None:
    with pytest.raises(ConnectionClosedError):
        asyncio.run(_read(b"Content-Length: 40\r\n\r\n{\"type\":"))


@pytest.mark.parametrize(
    "data",
    [
        b"Content-Length: 0\r\n\r\n",
        b"Content-Length: nope\r\n\r\n{}",
        b"Foo: bar\r\n\r\n{}",
        b"Content-Length: 4\r\n\r\n[1]\n",
        b"Content-Length: 5\r\n\r\n{oops",
    ],
)
def test_read_message_rejects_bad_frames(data: bytes) -> None:
    with pytest.raises(ProtocolError):
        asyncio.run(_read(data))


def test_tsserver_command_adds_log_arguments() -> None:
    config = BridgeConfig(
        tsserver_path="/opt/ts/bin/tsserver-missing",
        tsserver_args=("--disableAutomaticTypingAcquisition",),
        tsserver_log_file="/tmp/tsserver.log",
    )
    assert tsserver_command(config) == [
        "/opt/ts/bin/tsserver-missing",
        "--disableAutomaticTypingAcquisition",
        "--logFile",
        "/tmp/tsserver.log",
        "--logVerbosity",
        "normal",
    ]


class _FakeStdin:
    def __init__(self) -> None:
        self.written: list[bytes] = []
        self._closing = False

    def write(self, data: bytes) -> None:
        self.written.append(data)

    def is_closing(self) -> bool:
        return self._closing

    def close(self) -> None:
        self._closing = True


class _FakeProcess:
    def __init__(self) -> None:
        self.stdin = _FakeStdin()
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        self.returncode: int | None = None
        self._exited = asyncio.Event()

    async def wait(self) -> int | None:
        await self._exited.wait()
        return self.returncode

    def exit(self, code: int) -> None:
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    def kill(self) -> None:
        self.exit(-9)


def test_process_delivers_messages_and_reports_exit() -> None:
    received: list[object] = []
    closed: list[BaseException | None] = []
    launched: list[tuple[object, ...]] = []

    async def scenario() -> TsServerProcess:
        fake = _FakeProcess()

        async def factory(*args: object, **kwargs: object) -> _FakeProcess:
            launched.append(args)
            return fake

        process = TsServerProcess(["tsserver", "--useInferredProjectPerProjectRoot"], process_factory=factory)
        process.on_message(received.append)
        process.on_close(closed.append)
        await process.start()
        process.send({"seq": 1, "type": "request", "command": "exit"})
        assert fake.stdin.written == [encode_command({"seq": 1, "type": "request", "command": "exit"})]
        fake.stderr.feed_data(b"Version 5.4\n")
        fake.stdout.feed_data(frame({"seq": 0, "type": "event", "event": "projectLoadingStart", "body": {}}))
        fake.stdout.feed_data(b"Content-Length: 3\r\n\r\n[]\n")
        fake.exit(1)
        for _ in range(20):
            if process.closed:
                break
            await settle()
        return process

    process = asyncio.run(scenario())
    assert launched == [("tsserver", "--useInferredProjectPerProjectRoot")]
    assert received == [{"seq": 0, "type": "event", "event": "projectLoadingStart", "body": {}}]
    assert process.closed
    assert len(closed) == 1
    assert "exited with code 1" in str(closed[0])
    with pytest.raises(ConnectionClosedError):
        process.send({"seq": 2, "type": "request", "command": "exit"})


def test_process_start_failure_is_connection_closed() -> None:
    async def factory(*args: object, **kwargs: object) -> object:
        raise FileNotFoundError("tsserver")

    async def scenario() -> None:
        await TsServerProcess(["tsserver"], process_factory=factory).start()

    with pytest.raises(ConnectionClosedError, match="failed to start tsserver"):
        asyncio.run(scenario())
