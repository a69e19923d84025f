"""Shared helpers for CLI commands."""

from __future__ import annotations

import logging
import os
import signal
import threading
from pathlib import Path
from typing import Optional, Type

import typer
from rich.console import Console
from rich.logging import RichHandler

from common.config import getenv, load_ssm_params, require, resolve_state_location
from common.identity import Signer
from state.codec import M
from state.file_store import FileStateStore
from state.s3_store import S3StateStore


console = Console()
err_console = Console(stderr=True)

ENV_STATE_FERNET_KEY = "STATE_FERNET_KEY"


def setup_logging(*, verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging with Rich handler."""
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    else:
        level = logging.INFO

    handler = RichHandler(console=err_console, show_time=True, show_path=False, rich_tracebacks=True)
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("httpx", "httpcore", "botocore", "boto3", "urllib3"):
        logging.getLogger(name).setLevel(logging.WARNING)


def print_ok(message: str) -> None:
    console.print(f"[green]OK[/green] {message}")


def print_err(message: str) -> None:
    err_console.print(f"[red]ERROR[/red] {message}")


def load_signer(value: Optional[str], what: str) -> Signer:
    if not value:
        print_err(f"Missing {what} private key (option or environment variable)")
        raise typer.Exit(code=2)
    try:
        return Signer.from_hex(value)
    except ValueError as ex:
        print_err(f"Invalid {what} private key: {ex}")
        raise typer.Exit(code=2)


def checkpoint_path(state_file: Path) -> Path:
    return state_file.with_name(f"{state_file.stem}.checkpoint.json")


def open_backend(state_file: Optional[Path], model: Type[M], *, checkpoint: bool = False):
    """Local file backend when `state_file` is given, otherwise the S3 object from env/SSM."""
    if state_file is not None:
        path = checkpoint_path(state_file) if checkpoint else state_file
        return FileStateStore(path, model=model, fernet_key=getenv(ENV_STATE_FERNET_KEY))

    loc = resolve_state_location()
    params = load_ssm_params(loc["prefix"], ["fernet_key"])
    fernet_key = require(params.get("fernet_key"), f"{loc['prefix']}fernet_key")
    key = loc["checkpoint_key"] if checkpoint else loc["key"]
    return S3StateStore(model=model, bucket=loc["bucket"], key=key, fernet_key=fernet_key)


def install_stop_handlers(stop: threading.Event) -> None:
    """Set `stop` on SIGINT/SIGTERM so the worker loop exits between passes."""

    def handler(signum, frame):
        err_console.print("\n[yellow]![/yellow] Stopping worker...")
        stop.set()

    signal.signal(signal.SIGINT, handler)
    if hasattr(signal, "SIGTERM") and os.name != "nt":
        signal.signal(signal.SIGTERM, handler)
