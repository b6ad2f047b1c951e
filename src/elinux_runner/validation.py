"""Validation helpers for user input."""

from __future__ import annotations

import re

from elinux_runner.errors import invalid_app_name_error, invalid_port_error

# App names end up inside operator-defined shell commands, keep them to a safe charset
APP_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


def validate_app_name(app_name: str) -> None:
    """Validate an app name before it is bound into command templates.

    Args:
        app_name: Application name to validate

    Raises:
        RunnerError: If the name contains characters outside the safe set
    """
    if not APP_NAME_PATTERN.match(app_name):
        raise invalid_app_name_error(app_name)


def validate_port(port: int) -> None:
    """Validate a TCP port number.

    Args:
        port: Port to validate

    Raises:
        RunnerError: If the port is out of range
    """
    if not 0 < port < 65536:
        raise invalid_port_error(port)
