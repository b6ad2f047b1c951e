"""Shared CLI helpers and constants."""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Coroutine
from typing import Any, NoReturn, TypeVar

import structlog
import typer

from elinux_runner.config.store import TargetConfigStore
from elinux_runner.device.facade import TargetDevice
from elinux_runner.device.registry import discover_devices, find_device
from elinux_runner.errors import RunnerError

T = TypeVar("T")


def format_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=True)


def configure_logging(verbose: bool = False) -> None:
    """Send structured logs to stderr so stdout stays parseable."""
    level = logging.DEBUG if verbose else logging.WARNING
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(sys.stderr),
    )


def render_error(error: RunnerError, json_output: bool = False) -> NoReturn:
    if json_output:
        typer.echo(format_json({"status": "error", "error": error.to_dict()}))
    else:
        typer.echo(f"{error.code}: {error.message}")
        if error.remediation:
            typer.echo(f"Hint: {error.remediation}")
    raise typer.Exit(code=1)


def run_async(coro: Coroutine[Any, Any, T], json_output: bool = False) -> T:
    """Run ``coro`` to completion, rendering a RunnerError as a CLI failure."""
    try:
        return asyncio.run(coro)
    except RunnerError as exc:
        render_error(exc, json_output=json_output)


def load_devices(config_path: str | None = None) -> list[TargetDevice]:
    store = TargetConfigStore(config_path)
    return discover_devices(store.load())


def resolve_device(device_id: str, config_path: str | None = None) -> TargetDevice:
    """Look up a device by id; exits with the error rendered when unknown."""
    try:
        return find_device(load_devices(config_path), device_id)
    except RunnerError as exc:
        render_error(exc)


def echo_result(
    ok: bool, success: str, failure: str, json_output: bool = False, **extra: Any
) -> None:
    if json_output:
        typer.echo(format_json({"status": "done" if ok else "failed", **extra}))
    elif ok:
        typer.echo(f"✓ {success}")
    else:
        typer.echo(f"✗ {failure}")
    if not ok:
        raise typer.Exit(code=1)
