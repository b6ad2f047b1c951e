"""Pytest configuration and fixtures."""

from __future__ import annotations

import stat
import sys
from collections.abc import Callable, Generator, Sequence
from pathlib import Path
from typing import Any

import pytest
import structlog

from elinux_runner.config.models import TargetConfig
from elinux_runner.device.process import CommandResult
from elinux_runner.errors import command_failed_error


@pytest.fixture(autouse=True)
def reset_structlog() -> Generator[None, None, None]:
    """CLI runs reconfigure structlog against captured streams; undo that."""
    yield
    structlog.reset_defaults()


class FakeRunner:
    """Stands in for run_command; fails any command whose argv[0] is listed."""

    def __init__(self, failing: Sequence[str] = (), output: str = "") -> None:
        self.failing = set(failing)
        self.output = output
        self.calls: list[tuple[list[str], float | None]] = []

    async def __call__(self, argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:
        command = list(argv)
        self.calls.append((command, timeout))
        if command[0] in self.failing:
            raise command_failed_error(command, 1, "boom")
        return CommandResult(exit_code=0, stdout=self.output, stderr="")

    @property
    def commands(self) -> list[list[str]]:
        return [command for command, _ in self.calls]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def make_runner() -> Callable[..., FakeRunner]:
    return FakeRunner


@pytest.fixture
def python_command() -> Callable[[str], list[str]]:
    """argv running a script with the current interpreter."""

    def _command(script: str) -> list[str]:
        return [sys.executable, "-c", script]

    return _command


@pytest.fixture
def write_executable() -> Callable[[Path, str], Path]:
    """Write a /bin/sh script and mark it executable."""

    def _write(path: Path, body: str) -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"#!/bin/sh\n{body}\n")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _write


@pytest.fixture
def make_config() -> Callable[..., TargetConfig]:
    """Build a remote TargetConfig; keyword overrides use the JSON keys."""

    def _make(**overrides: Any) -> TargetConfig:
        data: dict[str, Any] = {
            "id": "rpi",
            "label": "Raspberry Pi",
            "sdkNameAndVersion": "Yocto 4.0",
            "install": ["install", "${localPath}", "${appName}"],
            "uninstall": ["uninstall", "${appName}"],
            "runDebug": ["rundebug", "${remotePath}${appName}"],
            "stopApp": ["stop", "${appName}"],
        }
        data.update(overrides)
        return TargetConfig.model_validate(data)

    return _make
