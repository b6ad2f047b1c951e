"""Port forwarding - operator-defined tunnel commands and the active forward."""

from __future__ import annotations

import asyncio
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol

import structlog

from elinux_runner.device.process import start_process, stop_process
from elinux_runner.device.template import CommandTemplate
from elinux_runner.errors import forward_port_failed_error, forward_port_not_found_error

logger = structlog.get_logger()

DEFAULT_FORWARD_TRIES = 10


@dataclass(eq=False)
class ForwardedPort:
    """A live forward. Compared by identity, each record is one tunnel."""

    host_port: int
    device_port: int
    process: asyncio.subprocess.Process | None = None
    readers: list[asyncio.Task[None]] = field(default_factory=list)

    async def dispose(self) -> None:
        for task in self.readers:
            task.cancel()
        if self.process is not None:
            await stop_process(self.process)


class PortForwarder(Protocol):
    @property
    def forwarded_ports(self) -> list[ForwardedPort]: ...

    async def forward(self, device_port: int, host_port: int | None = None) -> int: ...

    async def unforward(self, forwarded_port: ForwardedPort) -> None: ...

    async def dispose(self) -> None: ...


class NoOpPortForwarder:
    """Forwarder for targets whose ports are reachable as-is."""

    @property
    def forwarded_ports(self) -> list[ForwardedPort]:
        return []

    async def forward(self, device_port: int, host_port: int | None = None) -> int:
        return host_port or device_port

    async def unforward(self, forwarded_port: ForwardedPort) -> None:
        return None

    async def dispose(self) -> None:
        return None


async def _read_lines(
    stream: asyncio.StreamReader, queue: asyncio.Queue[str | None], done: asyncio.Event
) -> None:
    """Feed decoded lines into ``queue`` until ``done``, then keep draining the pipe."""
    try:
        while True:
            raw = await stream.readline()
            if not raw:
                break
            if not done.is_set():
                queue.put_nowait(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
    finally:
        queue.put_nowait(None)


class CommandPortForwarder:
    """Forwards ports by running the target's forwardPort command.

    The command stays alive for as long as the forward exists; it is
    considered established once a line of its output matches the success
    regex. A ``port`` named group (or a single numeric group) in the regex
    reports the host port actually bound.
    """

    def __init__(
        self,
        device_name: str,
        forward_port_command: CommandTemplate,
        forward_port_success_regex: str,
        *,
        tries: int = DEFAULT_FORWARD_TRIES,
        additional_bindings: Mapping[str, str] | None = None,
        ready_timeout: float | None = None,
    ) -> None:
        self._device_name = device_name
        self._command = forward_port_command
        self._success = re.compile(forward_port_success_regex)
        self._tries = tries
        self._additional = dict(additional_bindings or {})
        self._ready_timeout = ready_timeout
        self._forwarded_ports: list[ForwardedPort] = []

    @property
    def forwarded_ports(self) -> list[ForwardedPort]:
        return list(self._forwarded_ports)

    async def forward(self, device_port: int, host_port: int | None = None) -> int:
        """Forward ``device_port`` and return the host port.

        Host ports this forwarder already uses are skipped; a failed attempt
        moves on to the next host port.

        Raises:
            RunnerError: If every attempt fails
        """
        actual_host_port = host_port or device_port
        tries = 0
        while tries < self._tries:
            while any(p.host_port == actual_host_port for p in self._forwarded_ports):
                actual_host_port += 1

            forwarded = await self._try_forward(device_port, actual_host_port)
            if forwarded is not None:
                self._forwarded_ports.append(forwarded)
                logger.info(
                    "port_forwarded",
                    device=self._device_name,
                    device_port=device_port,
                    host_port=forwarded.host_port,
                )
                return forwarded.host_port

            actual_host_port += 1
            tries += 1

        logger.error(
            "port_forward_failed",
            device=self._device_name,
            device_port=device_port,
            command=" ".join(self._command.source()),
            tries=tries,
        )
        raise forward_port_failed_error(self._device_name, device_port, tries)

    async def unforward(self, forwarded_port: ForwardedPort) -> None:
        """Remove exactly ``forwarded_port`` and stop its tunnel.

        Raises:
            RunnerError: If the record is not one of this forwarder's ports
        """
        if forwarded_port not in self._forwarded_ports:
            raise forward_port_not_found_error(forwarded_port.host_port)
        self._forwarded_ports.remove(forwarded_port)
        await forwarded_port.dispose()
        logger.info(
            "port_unforwarded", device=self._device_name, host_port=forwarded_port.host_port
        )

    async def dispose(self) -> None:
        for forwarded_port in list(self._forwarded_ports):
            await self.unforward(forwarded_port)

    async def _try_forward(self, device_port: int, host_port: int) -> ForwardedPort | None:
        argv = self._command.expand(
            {"devicePort": str(device_port), "hostPort": str(host_port)}, self._additional
        )
        process = await start_process(argv)

        queue: asyncio.Queue[str | None] = asyncio.Queue()
        done = asyncio.Event()
        readers = [
            asyncio.create_task(_read_lines(stream, queue, done))
            for stream in (process.stdout, process.stderr)
            if stream is not None
        ]

        matched_port: int | None = None
        try:
            matched_port = await asyncio.wait_for(
                self._wait_for_success(queue, len(readers), host_port),
                timeout=self._ready_timeout,
            )
        except TimeoutError:
            logger.warning("port_forward_not_ready", device=self._device_name, host_port=host_port)
        except asyncio.CancelledError:
            # The tunnel is not tracked yet, so nothing else can stop it.
            for task in readers:
                task.cancel()
            await asyncio.shield(stop_process(process))
            raise
        finally:
            done.set()

        if matched_port is None:
            for task in readers:
                task.cancel()
            await stop_process(process)
            return None
        return ForwardedPort(matched_port, device_port, process, readers)

    async def _wait_for_success(
        self, queue: asyncio.Queue[str | None], open_streams: int, host_port: int
    ) -> int | None:
        while open_streams:
            line = await queue.get()
            if line is None:
                open_streams -= 1
                continue
            logger.debug("port_forward_output", device=self._device_name, line=line)
            match = self._success.search(line)
            if match:
                return self._matched_port(match, host_port)
        return None

    @staticmethod
    def _matched_port(match: re.Match[str], host_port: int) -> int:
        if "port" in match.re.groupindex and match.group("port"):
            return int(match.group("port"))
        if match.re.groups == 1 and (match.group(1) or "").isdigit():
            return int(match.group(1))
        return host_port


class PortForwardState:
    """The one host port a device currently holds forwarded for its app."""

    def __init__(self, forwarder: PortForwarder) -> None:
        self._forwarder = forwarder
        self.forwarded_host_port: int | None = None

    def remember(self, host_port: int) -> None:
        self.forwarded_host_port = host_port

    async def release(self) -> None:
        """Unforward the remembered port; nothing to do when none is active.

        Raises:
            RunnerError: If the remembered port has no matching record
        """
        host_port = self.forwarded_host_port
        if host_port is None:
            return
        matches = [p for p in self._forwarder.forwarded_ports if p.host_port == host_port]
        self.forwarded_host_port = None
        if len(matches) != 1:
            raise forward_port_not_found_error(host_port)
        await self._forwarder.unforward(matches[0])
