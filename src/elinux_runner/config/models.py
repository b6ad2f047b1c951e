"""Pydantic models for target device configuration."""

from __future__ import annotations

import re
import shlex
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from elinux_runner.device.template import CommandTemplate


def _split_command(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return shlex.split(value)
    return value


class TargetConfig(BaseModel):
    """A remote target reached through operator-defined command templates.

    Keys follow the camelCase layout of the targets file, e.g.::

        {
          "id": "rpi4",
          "label": "Raspberry Pi 4",
          "install": ["scp", "-r", "${localPath}", "pi@rpi4:/tmp/${appName}"],
          "runDebug": "ssh pi@rpi4 ${remotePath}${appName}/${appName} --bundle=./",
          "forwardPort": ["ssh", "-N", "-L", "${hostPort}:localhost:${devicePort}", "pi@rpi4"],
          "forwardPortSuccessRegex": ".*"
        }
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    label: str = ""
    sdk_name_and_version: str = Field("", alias="sdkNameAndVersion")
    enabled: bool = True
    platform: str = "arm64"
    backend: str = "wayland"
    ping_command: list[str] = Field(default_factory=list, alias="ping")
    ping_success_regex: str | None = Field(None, alias="pingSuccessRegex")
    install_command: list[str] = Field(default_factory=list, alias="install")
    uninstall_command: list[str] = Field(default_factory=list, alias="uninstall")
    run_debug_command: list[str] = Field(default_factory=list, alias="runDebug")
    stop_app_command: list[str] = Field(default_factory=list, alias="stopApp")
    forward_port_command: list[str] = Field(default_factory=list, alias="forwardPort")
    forward_port_success_regex: str | None = Field(None, alias="forwardPortSuccessRegex")

    @field_validator(
        "ping_command",
        "install_command",
        "uninstall_command",
        "run_debug_command",
        "stop_app_command",
        "forward_port_command",
        mode="before",
    )
    @classmethod
    def split_shell_string(cls, value: Any) -> Any:
        """Accept shell-style strings as well as argv lists."""
        return _split_command(value)

    @field_validator("ping_success_regex", "forward_port_success_regex")
    @classmethod
    def check_regex(cls, value: str | None) -> str | None:
        if value is not None:
            try:
                re.compile(value)
            except re.error as exc:
                raise ValueError(f"invalid regular expression {value!r}: {exc}") from exc
        return value

    @model_validator(mode="after")
    def check_commands(self) -> TargetConfig:
        """An enabled target needs install and runDebug; forwarding needs its regex."""
        if self.forward_port_command and not self.forward_port_success_regex:
            raise ValueError("forwardPort requires forwardPortSuccessRegex")
        if self.enabled:
            missing = [
                key
                for key, command in (
                    ("install", self.install_command),
                    ("runDebug", self.run_debug_command),
                )
                if not command
            ]
            if missing:
                raise ValueError(f"missing required command(s): {', '.join(missing)}")
        return self

    @property
    def display_label(self) -> str:
        return self.label or self.id

    @property
    def uses_port_forwarding(self) -> bool:
        return bool(self.forward_port_command)

    @property
    def install(self) -> CommandTemplate:
        return CommandTemplate.parse(self.install_command)

    @property
    def uninstall(self) -> CommandTemplate:
        return CommandTemplate.parse(self.uninstall_command)

    @property
    def run_debug(self) -> CommandTemplate:
        return CommandTemplate.parse(self.run_debug_command)

    @property
    def stop_app(self) -> CommandTemplate:
        return CommandTemplate.parse(self.stop_app_command)

    @property
    def ping(self) -> CommandTemplate:
        return CommandTemplate.parse(self.ping_command)

    @property
    def forward_port(self) -> CommandTemplate:
        return CommandTemplate.parse(self.forward_port_command)


class TargetsFile(BaseModel):
    """Top-level layout of the targets JSON file."""

    targets: list[TargetConfig] = Field(default_factory=list)
