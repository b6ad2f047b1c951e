"""VM service discovery - finds the debug URI announced in an app's log output."""

from __future__ import annotations

import asyncio
import re
from enum import Enum
from urllib.parse import SplitResult, urlsplit

import structlog

from elinux_runner.device.log_reader import LogReader
from elinux_runner.device.port_forward import PortForwarder
from elinux_runner.errors import discovery_cancelled_error, discovery_timeout_error

logger = structlog.get_logger()

VM_SERVICE_PATTERN = re.compile(
    r"(?:The Dart VM service is listening on"
    r"|Observatory listening on"
    r"|An Observatory debugger and profiler on .* is available at:) "
    r"((http|//)[a-zA-Z0-9:/=_\-\.\[\]]+)"
)

_LOOPBACK_IPV4 = "127.0.0.1"
_LOOPBACK_IPV6 = "::1"


class DiscoveryState(Enum):
    WAITING = "waiting"
    FOUND = "found"
    CLOSED = "closed"  # log stream ended without an announcement
    FAILED = "failed"  # forwarding the discovered port raised
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


def _with_host_port(uri: SplitResult, host: str, port: int | None) -> SplitResult:
    host_part = f"[{host}]" if ":" in host else host
    netloc = host_part if port is None else f"{host_part}:{port}"
    if uri.username:
        userinfo = uri.username if uri.password is None else f"{uri.username}:{uri.password}"
        netloc = f"{userinfo}@{netloc}"
    return uri._replace(netloc=netloc)


class DebugServiceDiscovery:
    """Watches a log stream for the VM service announcement.

    Subscribes on construction, so it must be created before the log reader
    can deliver the announcement. With a port forwarder the announced
    (device) port is forwarded and the host port substituted into the URI.
    """

    def __init__(
        self,
        log_reader: LogReader,
        *,
        port_forwarder: PortForwarder | None = None,
        host_port: int | None = None,
        device_port: int | None = None,
        ipv6: bool = False,
    ) -> None:
        self._subscription = log_reader.subscribe()
        self._port_forwarder = port_forwarder
        self._host_port = host_port
        self._device_port = device_port
        self._ipv6 = ipv6
        self.state = DiscoveryState.WAITING
        self._uri: str | None = None
        self._error: Exception | None = None
        self._timeout: float | None = None
        self._settled = asyncio.Event()
        self._task = asyncio.create_task(self._scan())

    async def uri(self, timeout: float | None = None) -> str | None:
        """Wait for the outcome.

        Returns the host-side URI, or None if the log stream ended first.

        Raises:
            RunnerError: On timeout or cancellation
            Exception: Whatever forwarding the port raised
        """
        if self.state is DiscoveryState.WAITING:
            try:
                await asyncio.wait_for(self._settled.wait(), timeout=timeout)
            except TimeoutError:
                self._timeout = timeout
                self._settle(DiscoveryState.TIMED_OUT)
                self._stop()
        return self._outcome()

    def cancel(self) -> None:
        """Stop watching. Safe to call in any state and never blocks."""
        self._settle(DiscoveryState.CANCELLED)
        self._stop()

    def _outcome(self) -> str | None:
        if self.state is DiscoveryState.FOUND:
            return self._uri
        if self.state is DiscoveryState.CLOSED:
            return None
        if self.state is DiscoveryState.TIMED_OUT:
            raise discovery_timeout_error(self._timeout or 0.0)
        if self.state is DiscoveryState.FAILED and self._error is not None:
            raise self._error
        raise discovery_cancelled_error()

    def _settle(self, state: DiscoveryState) -> None:
        if self.state is not DiscoveryState.WAITING:
            return
        self.state = state
        self._settled.set()

    def _stop(self) -> None:
        if not self._task.done():
            self._task.cancel()
        self._subscription.close()

    async def _scan(self) -> None:
        try:
            async for line in self._subscription:
                device_uri = self._match(line)
                if device_uri is None:
                    continue
                host_uri = await self._to_host_uri(device_uri)
                self._uri = host_uri.geturl()
                logger.info("vm_service_found", uri=self._uri)
                self._settle(DiscoveryState.FOUND)
                return
            self._settle(DiscoveryState.CLOSED)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._error = exc
            self._settle(DiscoveryState.FAILED)
        finally:
            self._subscription.close()

    def _match(self, line: str) -> SplitResult | None:
        match = VM_SERVICE_PATTERN.search(line)
        if not match:
            return None
        raw = match.group(1)
        if raw.startswith("//"):
            raw = f"http:{raw}"
        uri = urlsplit(raw)
        if self._device_port is not None and uri.port != self._device_port:
            logger.debug("vm_service_port_skipped", uri=raw, expected_port=self._device_port)
            return None
        return uri

    async def _to_host_uri(self, device_uri: SplitResult) -> SplitResult:
        host_uri = device_uri
        host = device_uri.hostname or _LOOPBACK_IPV4
        if self._port_forwarder is not None and device_uri.port is not None:
            host_port = await self._port_forwarder.forward(
                device_uri.port, host_port=self._host_port
            )
            host_uri = _with_host_port(device_uri, host, host_port)
        if self._ipv6 and host == _LOOPBACK_IPV4:
            host_uri = _with_host_port(host_uri, _LOOPBACK_IPV6, host_uri.port)
        return host_uri
