"""Exception taxonomy for the tsserver bridge."""

from __future__ import annotations


class BridgeError(RuntimeError):
    """Base class for every failure the bridge surfaces to its callers."""


class ConnectionClosedError(BridgeError):
    """The tsserver process exited or its channel closed.

    Fatal to the bridge: every pending request is rejected with this error and
    later sends fail immediately until the owner starts a new bridge.
    """


class ProtocolError(BridgeError):
    """A tsserver message was malformed or could not be correlated."""


class RequestTimeoutError(BridgeError):
    def __init__(self, command: str, seq: int, timeout: float) -> None:
        super().__init__(f"tsserver command {command!r} (seq {seq}) timed out after {timeout:g}s")
        self.command = command
        self.seq = seq
        self.timeout = timeout


class InvalidStateError(BridgeError):
    """The caller broke the open-before-use contract or passed a stale handle."""


class AnalysisError(BridgeError):
    """tsserver answered a command with ``success: false``."""

    def __init__(self, command: str, message: str) -> None:
        super().__init__(message)
        self.command = command
        self.message = message


class ConfigError(BridgeError):
    """Configuration values could not be interpreted."""


class NeverThrown(RuntimeError):
    """Raised by ``never()`` when a path believed unreachable is reached."""

    def __init__(self, message: str, *, env: dict[str, object] | None = None) -> None:
        super().__init__(message)
        self.env = dict(env or {})
