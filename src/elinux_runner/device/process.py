"""Process supervision - spawn, track, reap and kill child processes."""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import os
import signal
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

import structlog

from elinux_runner.errors import (
    command_failed_error,
    command_timeout_error,
    process_spawn_error,
)

logger = structlog.get_logger()

KillFunction = Callable[[int], bool]


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def output(self) -> str:
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


async def start_process(
    argv: Sequence[str], env: Mapping[str, str] | None = None
) -> asyncio.subprocess.Process:
    """Start ``argv`` with piped output; ``env`` is layered over the parent environment.

    Raises:
        RunnerError: If the OS refuses to start the process
    """
    command = list(argv)
    if not command:
        raise process_spawn_error(command, "empty command")
    environment = {**os.environ, **env} if env else None
    try:
        return await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=environment,
        )
    except OSError as exc:
        raise process_spawn_error(command, str(exc)) from exc


async def stop_process(process: asyncio.subprocess.Process, timeout: float = 5.0) -> None:
    """Terminate ``process``, escalating to SIGKILL if it lingers."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
        await asyncio.wait_for(process.wait(), timeout=timeout)
    except ProcessLookupError:
        return
    except TimeoutError:
        logger.warning("process_kill", pid=process.pid)
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()


async def run_command(argv: Sequence[str], *, timeout: float | None = None) -> CommandResult:
    """Run ``argv`` to completion.

    A command that outlives ``timeout`` is killed before the error is raised.

    Raises:
        RunnerError: On spawn failure, non-zero exit status or timeout
    """
    command = list(argv)
    process = await start_process(command)
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        with contextlib.suppress(ProcessLookupError):
            process.kill()
        await process.wait()
        raise command_timeout_error(command, timeout or 0.0) from None

    result = CommandResult(
        exit_code=process.returncode if process.returncode is not None else -1,
        stdout=stdout.decode("utf-8", errors="replace").strip(),
        stderr=stderr.decode("utf-8", errors="replace").strip(),
    )
    if result.exit_code != 0:
        raise command_failed_error(command, result.exit_code, result.output)
    return result


def kill_pid(pid: int, sig: int = signal.SIGTERM) -> bool:
    """Signal ``pid``; False when the process is gone or cannot be signalled."""
    try:
        os.kill(pid, sig)
    except ProcessLookupError:
        logger.debug("kill_no_such_process", pid=pid)
        return False
    except OSError as exc:
        logger.warning("kill_failed", pid=pid, error=str(exc))
        return False
    return True


class ProcessHandle:
    """A spawned process plus an exit notification delivered after untracking."""

    def __init__(
        self, handle_id: int, process: asyncio.subprocess.Process, argv: Sequence[str]
    ) -> None:
        self.id = handle_id
        self.process = process
        self.argv = list(argv)
        self.returncode: int | None = None
        self._exited = asyncio.Event()

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def has_exited(self) -> bool:
        return self._exited.is_set()

    async def wait(self) -> int | None:
        """Wait for exit. The supervisor has already forgotten the process by then."""
        await self._exited.wait()
        return self.returncode

    def _mark_exited(self, returncode: int | None) -> None:
        self.returncode = returncode
        self._exited.set()

    def __repr__(self) -> str:
        return f"ProcessHandle(id={self.id}, pid={self.pid}, argv={self.argv!r})"


class ProcessSupervisor:
    """Tracks the live processes of one device.

    Handles are added by ``spawn`` and removed only by their own exit watcher.
    """

    def __init__(self, kill: KillFunction = kill_pid) -> None:
        self._kill = kill
        self._ids = itertools.count(1)
        self._running: dict[int, ProcessHandle] = {}
        self._watchers: set[asyncio.Task[None]] = set()

    @property
    def running(self) -> tuple[ProcessHandle, ...]:
        return tuple(self._running.values())

    def __len__(self) -> int:
        return len(self._running)

    async def spawn(
        self, argv: Sequence[str], env: Mapping[str, str] | None = None
    ) -> ProcessHandle:
        """Start and track a process.

        Raises:
            RunnerError: If the process cannot be started
        """
        process = await start_process(argv, env)
        return self.track(process, argv)

    def track(self, process: asyncio.subprocess.Process, argv: Sequence[str]) -> ProcessHandle:
        handle = ProcessHandle(next(self._ids), process, argv)
        self._running[handle.id] = handle
        watcher = asyncio.create_task(self._watch(handle))
        self._watchers.add(watcher)
        watcher.add_done_callback(self._watchers.discard)
        logger.info("process_started", pid=handle.pid, command=" ".join(handle.argv))
        return handle

    async def _watch(self, handle: ProcessHandle) -> None:
        returncode: int | None = None
        try:
            returncode = await handle.process.wait()
        finally:
            self._running.pop(handle.id, None)
            handle._mark_exited(returncode)
        logger.info("process_exited", pid=handle.pid, exit_code=returncode)

    def kill_all(self) -> bool:
        """SIGTERM every live process; True only if every signal was delivered."""
        succeeded = True
        # Walk a snapshot, exit watchers remove from the live set.
        for handle in self.running:
            killed = self._kill(handle.pid)
            if not killed:
                logger.warning("process_kill_failed", pid=handle.pid)
            succeeded = succeeded and killed
        return succeeded
