"""Device discovery - desktop stand-ins plus configured remote targets."""

from __future__ import annotations

import platform
from collections.abc import Iterable

import structlog

from elinux_runner.config.models import TargetConfig
from elinux_runner.device.facade import TargetDevice
from elinux_runner.errors import target_not_found_error

logger = structlog.get_logger()

DESKTOP_BACKENDS = ("wayland", "x11")

_HOST_ARCHES = {
    "x86_64": "x64",
    "amd64": "x64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def host_arch(machine: str | None = None) -> str:
    machine = (machine or platform.machine()).lower()
    return _HOST_ARCHES.get(machine, machine)


def desktop_device_id(backend: str) -> str:
    return f"elinux-{backend}"


def discover_devices(
    configs: Iterable[TargetConfig],
    *,
    host_system: str | None = None,
    host_machine: str | None = None,
) -> list[TargetDevice]:
    """Build every device this host can deploy to.

    Desktop targets exist only on Linux hosts. Disabled configs are skipped.
    """
    devices: list[TargetDevice] = []
    system = host_system or platform.system()
    if system == "Linux":
        arch = host_arch(host_machine)
        for backend in DESKTOP_BACKENDS:
            devices.append(
                TargetDevice(
                    desktop_device_id(backend),
                    config=None,
                    desktop=True,
                    backend_type=backend,
                    target_arch=arch,
                )
            )

    for config in configs:
        if not config.enabled:
            logger.debug("target_disabled", target=config.id)
            continue
        devices.append(
            TargetDevice(
                config.id,
                config=config,
                desktop=False,
                backend_type=config.backend,
                target_arch=config.platform,
                sdk_name_and_version=config.sdk_name_and_version,
            )
        )

    logger.debug("devices_discovered", device_count=len(devices))
    return devices


def find_device(devices: Iterable[TargetDevice], device_id: str) -> TargetDevice:
    """Return the device with ``device_id``.

    Raises:
        RunnerError: If no device has that id
    """
    for device in devices:
        if device.id == device_id:
            return device
    raise target_not_found_error(device_id)
