"""Error model - Actionable errors with remediation hints."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class RunnerError(Exception):
    """
    Base error with context and remediation guidance.

    Every failure raised by the runner carries a stable code, the target or
    command it concerns, and a hint for the operator.
    """

    code: str
    message: str
    context: dict[str, Any] = field(default_factory=dict)
    remediation: str = ""

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict."""
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
            "remediation": self.remediation,
        }


# Specific error constructors for common cases


def unbound_placeholder_error(name: str, command: list[str] | str) -> RunnerError:
    """Create error for a template placeholder without a binding."""
    text = command if isinstance(command, str) else " ".join(command)
    return RunnerError(
        code="ERR_UNBOUND_PLACEHOLDER",
        message=f"No value bound for placeholder ${{{name}}} in: {text}",
        context={"placeholder": name, "command": text},
        remediation="Check the placeholder spelling in the target's command template.",
    )


def process_spawn_error(command: list[str], reason: str) -> RunnerError:
    """Create error for a process that could not be started."""
    text = " ".join(command)
    return RunnerError(
        code="ERR_PROCESS_SPAWN",
        message=f"Failed to start process: {text}",
        context={"command": text, "reason": reason},
        remediation="Verify the executable exists and is runnable on this host.",
    )


def command_failed_error(
    command: list[str], exit_code: int, output: str = ""
) -> RunnerError:
    """Create error for a command that exited with a non-zero status."""
    text = " ".join(command)
    return RunnerError(
        code="ERR_COMMAND_FAILED",
        message=f"Command exited with status {exit_code}: {text}",
        context={"command": text, "exit_code": exit_code, "output": output},
        remediation="Run the command by hand to inspect its output.",
    )


def command_timeout_error(command: list[str], timeout: float) -> RunnerError:
    """Create error for a command that did not finish in time."""
    text = " ".join(command)
    return RunnerError(
        code="ERR_COMMAND_TIMEOUT",
        message=f"Command timed out after {timeout:g}s: {text}",
        context={"command": text, "timeout_s": timeout},
        remediation="Check the target is reachable or raise the timeout.",
    )


def discovery_timeout_error(timeout: float) -> RunnerError:
    """Create error for a VM service announcement that never arrived."""
    return RunnerError(
        code="ERR_DISCOVERY_TIMEOUT",
        message=f"VM service URI not found within {timeout:g}s",
        context={"timeout_s": timeout},
        remediation="Make sure the app runs in debug or profile mode and prints its VM service URI.",
    )


def discovery_cancelled_error() -> RunnerError:
    """Create error for waiting on a cancelled discovery."""
    return RunnerError(
        code="ERR_DISCOVERY_CANCELLED",
        message="VM service discovery was cancelled",
        context={},
        remediation="Start a new discovery for the running process.",
    )


def forward_port_not_found_error(host_port: int) -> RunnerError:
    """Create error for releasing a forwarded port that is not tracked."""
    return RunnerError(
        code="ERR_FORWARD_PORT_NOT_FOUND",
        message=f"No forwarded port record for host port {host_port}",
        context={"host_port": host_port},
        remediation="The forward was already released; nothing else to clean up.",
    )


def forward_port_failed_error(device_name: str, device_port: int, tries: int) -> RunnerError:
    """Create error for a forward-port command that never reported success."""
    return RunnerError(
        code="ERR_FORWARD_PORT_FAILED",
        message=f"Forwarding port {device_port} for {device_name} failed after {tries} tries",
        context={"device": device_name, "device_port": device_port, "tries": tries},
        remediation="Check the forwardPort command and forwardPortSuccessRegex in the target config.",
    )


def target_not_found_error(target_id: str) -> RunnerError:
    """Create error for an unknown target id."""
    return RunnerError(
        code="ERR_TARGET_NOT_FOUND",
        message=f"Target not found: {target_id}",
        context={"target": target_id},
        remediation="List configured targets with 'elinux-runner target list'.",
    )


def invalid_config_error(path: str, reason: str) -> RunnerError:
    """Create error for an unreadable or malformed targets file."""
    return RunnerError(
        code="ERR_INVALID_CONFIG",
        message=f"Invalid target config: {path}",
        context={"path": path, "reason": reason},
        remediation="Fix the targets file or point ELINUX_RUNNER_CONFIG at a valid one.",
    )


def missing_remote_config_error(device_id: str) -> RunnerError:
    """Create error for a remote device constructed without a target config."""
    return RunnerError(
        code="ERR_MISSING_REMOTE_CONFIG",
        message=f"Remote device {device_id} has no target config",
        context={"device": device_id},
        remediation="Pass a TargetConfig or construct the device as a desktop target.",
    )


def bundle_builder_missing_error(app_name: str) -> RunnerError:
    """Create error for a non-prebuilt launch without a bundle builder."""
    return RunnerError(
        code="ERR_BUNDLE_BUILDER_MISSING",
        message=f"Cannot build {app_name}: no bundle builder configured",
        context={"app": app_name},
        remediation="Build the bundle first and launch it as a prebuilt application.",
    )


def invalid_app_name_error(app_name: str) -> RunnerError:
    """Create error for an app name unsafe to bind into command templates."""
    return RunnerError(
        code="ERR_INVALID_APP_NAME",
        message=f"Invalid app name: {app_name}",
        context={"app": app_name},
        remediation="App names may contain letters, digits, '.', '_' and '-'.",
    )


def invalid_port_error(port: int) -> RunnerError:
    """Create error for an out-of-range port number."""
    return RunnerError(
        code="ERR_INVALID_PORT",
        message=f"Invalid port: {port}",
        context={"port": port},
        remediation="Ports must be between 1 and 65535.",
    )
