"""Tests for process helpers and ProcessSupervisor."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from unittest.mock import patch

import pytest

from elinux_runner.device.process import (
    CommandResult,
    ProcessSupervisor,
    kill_pid,
    run_command,
    start_process,
)
from elinux_runner.errors import RunnerError


class TestRunCommand:
    """Tests for run_command."""

    @pytest.mark.asyncio
    async def test_captures_output(self, python_command: Callable[[str], list[str]]) -> None:
        result = await run_command(python_command("print('hello')"))

        assert result == CommandResult(exit_code=0, stdout="hello", stderr="")

    @pytest.mark.asyncio
    async def test_non_zero_exit_raises(self, python_command: Callable[[str], list[str]]) -> None:
        command = python_command("import sys; print('bad', file=sys.stderr); sys.exit(3)")

        with pytest.raises(RunnerError) as exc_info:
            await run_command(command)

        assert exc_info.value.code == "ERR_COMMAND_FAILED"
        assert exc_info.value.context["exit_code"] == 3
        assert "bad" in exc_info.value.context["output"]

    @pytest.mark.asyncio
    async def test_timeout_kills_command(self, python_command: Callable[[str], list[str]]) -> None:
        with pytest.raises(RunnerError) as exc_info:
            await run_command(python_command("import time; time.sleep(30)"), timeout=0.2)

        assert exc_info.value.code == "ERR_COMMAND_TIMEOUT"

    @pytest.mark.asyncio
    async def test_invalid_utf8_is_replaced(
        self, python_command: Callable[[str], list[str]]
    ) -> None:
        result = await run_command(
            python_command("import sys; sys.stdout.buffer.write(b'\\xffok')")
        )

        assert result.stdout == "\ufffdok"

    @pytest.mark.asyncio
    async def test_missing_executable(self) -> None:
        with pytest.raises(RunnerError) as exc_info:
            await start_process(["/nonexistent/elinux-runner-binary"])

        assert exc_info.value.code == "ERR_PROCESS_SPAWN"

    @pytest.mark.asyncio
    async def test_empty_command(self) -> None:
        with pytest.raises(RunnerError) as exc_info:
            await start_process([])

        assert exc_info.value.code == "ERR_PROCESS_SPAWN"


class TestKillPid:
    """Tests for kill_pid."""

    def test_missing_process(self) -> None:
        with patch("os.kill", side_effect=ProcessLookupError):
            assert kill_pid(12345) is False

    def test_permission_denied(self) -> None:
        with patch("os.kill", side_effect=PermissionError):
            assert kill_pid(1) is False

    def test_delivered(self) -> None:
        with patch("os.kill") as mock_kill:
            assert kill_pid(12345) is True
        mock_kill.assert_called_once()


class TestProcessSupervisor:
    """Tests for the live process set."""

    @pytest.mark.asyncio
    async def test_exit_removes_before_notifying(
        self, python_command: Callable[[str], list[str]]
    ) -> None:
        supervisor = ProcessSupervisor()
        handle = await supervisor.spawn(python_command("pass"))

        returncode = await asyncio.wait_for(handle.wait(), timeout=10)

        assert returncode == 0
        assert handle.has_exited
        assert handle not in supervisor.running
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_kill_all_terminates_everything(
        self, python_command: Callable[[str], list[str]]
    ) -> None:
        supervisor = ProcessSupervisor()
        first = await supervisor.spawn(python_command("import time; time.sleep(30)"))
        second = await supervisor.spawn(python_command("import time; time.sleep(30)"))
        assert len(supervisor) == 2

        assert supervisor.kill_all() is True

        await asyncio.wait_for(asyncio.gather(first.wait(), second.wait()), timeout=10)
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_kill_all_reports_any_failure(
        self, python_command: Callable[[str], list[str]]
    ) -> None:
        killed: list[int] = []
        refused: set[int] = set()

        def fake_kill(pid: int) -> bool:
            if pid in refused:
                return False
            killed.append(pid)
            return kill_pid(pid)

        supervisor = ProcessSupervisor(kill=fake_kill)
        first = await supervisor.spawn(python_command("import time; time.sleep(30)"))
        second = await supervisor.spawn(python_command("import time; time.sleep(30)"))
        refused.add(first.pid)

        assert supervisor.kill_all() is False
        assert killed == [second.pid]

        kill_pid(first.pid)
        await asyncio.wait_for(asyncio.gather(first.wait(), second.wait()), timeout=10)
        assert len(supervisor) == 0

    @pytest.mark.asyncio
    async def test_kill_all_empty(self) -> None:
        assert ProcessSupervisor().kill_all() is True

    @pytest.mark.asyncio
    async def test_spawn_passes_environment(
        self, python_command: Callable[[str], list[str]]
    ) -> None:
        supervisor = ProcessSupervisor()
        handle = await supervisor.spawn(
            python_command("import os; print(os.environ['ELINUX_TEST_VALUE'])"),
            env={"ELINUX_TEST_VALUE": "42"},
        )
        assert handle.process.stdout is not None

        output = await asyncio.wait_for(handle.process.stdout.read(), timeout=10)
        await asyncio.wait_for(handle.wait(), timeout=10)

        assert output.decode().strip() == "42"
