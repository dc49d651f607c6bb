from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import date, datetime, time
from pathlib import Path
from typing import TypeAlias
import tomllib

from tsbridge.exceptions import ConfigError

DEFAULT_CONFIG_NAME = "tsbridge.toml"
DEFAULT_TSSERVER_PATH = "tsserver"
DEFAULT_REQUEST_TIMEOUT_MS = 30_000
DEFAULT_DIAGNOSTICS_DELAY_MS = 200
DIAGNOSTIC_CATEGORIES = ("syntax", "semantic", "suggestion")
CHANGE_SYNC_MODES = ("incremental", "full")

ENV_TSSERVER_PATH = "TSBRIDGE_TSSERVER_PATH"
ENV_TIMEOUT_MS = "TSBRIDGE_TIMEOUT_MS"

TomlScalar: TypeAlias = str | int | float | bool | None | date | datetime | time
TomlValue: TypeAlias = TomlScalar | list["TomlValue"] | dict[str, "TomlValue"]
TomlTable: TypeAlias = dict[str, TomlValue]


@dataclass(frozen=True)
class BridgeConfig:
    tsserver_path: str = DEFAULT_TSSERVER_PATH
    tsserver_args: tuple[str, ...] = ()
    tsserver_log_file: str | None = None
    tsserver_log_verbosity: str | None = None
    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    diagnostic_categories: tuple[str, ...] = DIAGNOSTIC_CATEGORIES
    diagnostics_delay_ms: int = DEFAULT_DIAGNOSTICS_DELAY_MS
    change_sync: str = "incremental"

    @property
    def request_timeout(self) -> float:
        return self.request_timeout_ms / 1000

    @property
    def diagnostics_delay(self) -> float:
        return self.diagnostics_delay_ms / 1000


def _load_toml(path: Path) -> TomlTable:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError:
        return {}
    try:
        data = tomllib.loads(raw)
    except tomllib.TOMLDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def load_config(root: Path | None = None, config_path: Path | None = None) -> TomlTable:
    if config_path is None:
        base = root if root is not None else Path.cwd()
        config_path = base / DEFAULT_CONFIG_NAME
    return _load_toml(config_path)


def _section(data: TomlTable, name: str) -> TomlTable:
    section = data.get(name, {})
    return section if isinstance(section, dict) else {}


def _normalize_name_list(value: TomlValue) -> list[str]:
    items: list[str] = []
    if value is None:
        return items
    if isinstance(value, str):
        items = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set)):
        for item in value:
            if isinstance(item, str):
                items.extend([part.strip() for part in item.split(",") if part.strip()])
    return [item for item in items if item]


def _positive_int(value: TomlValue, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer, got {value!r}")
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}") from None
    if number <= 0:
        raise ConfigError(f"{key} must be positive, got {number}")
    return number


def merge_payload(payload: TomlTable, defaults: TomlTable) -> TomlTable:
    merged = dict(defaults)
    for key, value in payload.items():
        if value is None:
            continue
        merged[key] = value
    return merged


def env_overrides() -> TomlTable:
    overrides: TomlTable = {}
    raw_path = os.getenv(ENV_TSSERVER_PATH, "").strip()
    if raw_path:
        overrides["path"] = raw_path
    raw_timeout = os.getenv(ENV_TIMEOUT_MS, "").strip()
    if raw_timeout:
        overrides["request_timeout_ms"] = _positive_int(raw_timeout, key=ENV_TIMEOUT_MS)
    return overrides


def build_config(
    root: Path | None = None,
    config_path: Path | None = None,
    *,
    overrides: TomlTable | None = None,
) -> BridgeConfig:
    """Layer file values, then environment, then explicit overrides."""
    data = load_config(root=root, config_path=config_path)
    tsserver = merge_payload(env_overrides(), _section(data, "tsserver"))
    tsserver = merge_payload(dict(overrides or {}), tsserver)
    diagnostics = _section(data, "diagnostics")
    documents = _section(data, "documents")

    categories = tuple(_normalize_name_list(diagnostics.get("categories")))
    if not categories:
        categories = DIAGNOSTIC_CATEGORIES
    unknown = [name for name in categories if name not in DIAGNOSTIC_CATEGORIES]
    if unknown:
        raise ConfigError(f"unknown diagnostic categories: {', '.join(unknown)}")

    change_sync = str(documents.get("change_sync", "incremental")).strip().lower()
    if change_sync not in CHANGE_SYNC_MODES:
        raise ConfigError(f"change_sync must be one of {CHANGE_SYNC_MODES}, got {change_sync!r}")

    raw_args = tsserver.get("args", [])
    if isinstance(raw_args, str):
        args = tuple(raw_args.split())
    elif isinstance(raw_args, list):
        args = tuple(str(item) for item in raw_args)
    else:
        raise ConfigError(f"tsserver.args must be a list, got {raw_args!r}")

    log_file = tsserver.get("log_file")
    log_verbosity = tsserver.get("log_verbosity")
    return BridgeConfig(
        tsserver_path=str(tsserver.get("path") or DEFAULT_TSSERVER_PATH),
        tsserver_args=args,
        tsserver_log_file=str(log_file) if log_file else None,
        tsserver_log_verbosity=str(log_verbosity) if log_verbosity else None,
        request_timeout_ms=_positive_int(
            tsserver.get("request_timeout_ms", DEFAULT_REQUEST_TIMEOUT_MS),
            key="tsserver.request_timeout_ms",
        ),
        diagnostic_categories=categories,
        diagnostics_delay_ms=_non_negative_int(
            diagnostics.get("delay_ms", DEFAULT_DIAGNOSTICS_DELAY_MS),
            key="diagnostics.delay_ms",
        ),
        change_sync=change_sync,
    )


def _non_negative_int(value: TomlValue, *, key: str) -> int:
    if not isinstance(value, bool) and value in (0, "0"):
        return 0
    return _positive_int(value, key=key)
