from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Callable, Optional, TypeAlias

import typer

from tsbridge import __version__
from tsbridge.config import BridgeConfig, build_config
from tsbridge.exceptions import ConfigError
from tsbridge import server as server_module

app = typer.Typer(add_completion=False)
Starter: TypeAlias = Callable[[], None]

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"tsbridge {__version__}")
        raise typer.Exit(code=0)


def _configure_logging(level: str, log_file: Path | None) -> None:
    # stdout carries the LSP stream; logs go anywhere else.
    normalized = level.strip().upper()
    if normalized not in LOG_LEVELS:
        raise typer.BadParameter(
            f"log level must be one of {', '.join(LOG_LEVELS)}", param_hint="--log-level"
        )
    handler: logging.Handler
    if log_file is not None:
        handler = logging.FileHandler(log_file, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    logging.basicConfig(level=normalized, format=LOG_FORMAT, handlers=[handler], force=True)


def _resolve_config(
    root: Path,
    config: Path | None,
    tsserver_path: str | None,
    timeout_ms: int | None,
) -> BridgeConfig:
    try:
        return build_config(
            root,
            config,
            overrides={"path": tsserver_path, "request_timeout_ms": timeout_ms},
        )
    except ConfigError as exc:
        raise typer.BadParameter(str(exc)) from exc


@app.command()
def main(
    ctx: typer.Context,
    tsserver_path: Optional[str] = typer.Option(
        None, "--tsserver-path", help="tsserver executable or script."
    ),
    config: Optional[Path] = typer.Option(
        None, "--config", help="Configuration file (default: ./tsbridge.toml)."
    ),
    timeout_ms: Optional[int] = typer.Option(
        None, "--timeout-ms", help="Per-request tsserver timeout in milliseconds."
    ),
    log_level: str = typer.Option("INFO", "--log-level"),
    log_file: Optional[Path] = typer.Option(None, "--log-file"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True
    ),
) -> None:
    """Run the TypeScript language server bridge."""
    _configure_logging(log_level, log_file)
    resolved = _resolve_config(Path.cwd(), config, tsserver_path, timeout_ms)
    logging.getLogger(__name__).info(
        "tsbridge %s using %s", __version__, resolved.tsserver_path
    )
    server_module.server.config = resolved
    starter: Starter = (ctx.obj or {}).get("start", server_module.start)
    starter()


if __name__ == "__main__":  # pragma: no cover
    app()  # pragma: no cover
