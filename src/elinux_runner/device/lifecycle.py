"""Remote lifecycle - install, uninstall, stop and ping through command templates."""

from __future__ import annotations

import re
from collections.abc import Awaitable, Callable, Mapping, Sequence
from pathlib import Path

import structlog

from elinux_runner.config.models import TargetConfig
from elinux_runner.device.process import CommandResult, run_command
from elinux_runner.device.template import CommandTemplate
from elinux_runner.errors import RunnerError

logger = structlog.get_logger()

STOP_APP_TIMEOUT = 10.0

CommandRunner = Callable[..., Awaitable[CommandResult]]


class RemoteLifecycleController:
    """Runs a target's templated commands.

    The target is opaque: a command that exits 0 is the only signal of
    success, and every failure is logged and reported as False.
    """

    def __init__(self, config: TargetConfig, runner: CommandRunner = run_command) -> None:
        self._config = config
        self._runner = runner

    @property
    def target_id(self) -> str:
        return self._config.id

    async def install(
        self,
        app_name: str,
        local_path: str | Path,
        *,
        timeout: float | None = None,
        additional: Mapping[str, str] | None = None,
    ) -> bool:
        """Uninstall any previous copy, then run the install command."""
        if not await self.uninstall(app_name, timeout=timeout, additional=additional):
            return False

        logger.info("app_installing", app=app_name, local_path=str(local_path), target=self.target_id)
        installed = await self._run(
            "install",
            self._config.install,
            {"localPath": str(local_path), "appName": app_name},
            timeout=timeout,
            additional=additional,
        )
        if installed:
            logger.info("app_installed", app=app_name, target=self.target_id)
        return installed

    async def uninstall(
        self,
        app_name: str,
        *,
        timeout: float | None = None,
        additional: Mapping[str, str] | None = None,
    ) -> bool:
        """Run the uninstall command. A target without one has nothing to clean up."""
        template = self._config.uninstall
        if template.is_empty:
            logger.debug("uninstall_command_not_defined", target=self.target_id)
            return True

        logger.info("app_uninstalling", app=app_name, target=self.target_id)
        uninstalled = await self._run(
            "uninstall", template, {"appName": app_name}, timeout=timeout, additional=additional
        )
        if uninstalled:
            logger.info("app_uninstalled", app=app_name, target=self.target_id)
        return uninstalled

    async def stop(self, app_name: str, *, timeout: float = STOP_APP_TIMEOUT) -> None:
        """Best-effort stop; failures are only logged."""
        template = self._config.stop_app
        if template.is_empty:
            return
        logger.info("app_stopping", app=app_name, target=self.target_id)
        if await self._run("stop", template, {"appName": app_name}, timeout=timeout):
            logger.info("app_stopped", app=app_name, target=self.target_id)

    async def ping(self, *, timeout: float | None = None) -> bool:
        """Check reachability with the ping command and optional success regex."""
        template = self._config.ping
        if template.is_empty:
            return True
        result = await self._execute("ping", template, {}, timeout=timeout)
        if result is None:
            return False
        pattern = self._config.ping_success_regex
        if pattern is None:
            return True
        regex = re.compile(pattern)
        if any(regex.search(line) for line in result.output.splitlines()):
            return True
        logger.warning("ping_unexpected_output", target=self.target_id, output=result.output)
        return False

    async def _run(
        self,
        action: str,
        template: CommandTemplate,
        bindings: Mapping[str, str],
        *,
        timeout: float | None,
        additional: Mapping[str, str] | None = None,
    ) -> bool:
        return await self._execute(action, template, bindings, timeout, additional) is not None

    async def _execute(
        self,
        action: str,
        template: CommandTemplate,
        bindings: Mapping[str, str],
        timeout: float | None,
        additional: Mapping[str, str] | None = None,
    ) -> CommandResult | None:
        command: Sequence[str] = template.source()
        try:
            command = template.expand(bindings, additional)
            return await self._runner(command, timeout=timeout)
        except RunnerError as exc:
            logger.error(
                f"{action}_command_failed",
                target=self.target_id,
                command=" ".join(command),
                code=exc.code,
                error=exc.message,
            )
            return None
