"""Target device - install, launch, observe and stop an app on one target."""

from __future__ import annotations

import os
import platform
from collections.abc import Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit

import structlog

from elinux_runner.config.models import TargetConfig
from elinux_runner.device.discovery import DebugServiceDiscovery
from elinux_runner.device.engine_flags import compute_engine_environment
from elinux_runner.device.lifecycle import RemoteLifecycleController
from elinux_runner.device.log_reader import LogReader
from elinux_runner.device.models import (
    AppBundle,
    BuildInfo,
    BuildMode,
    BundleBuilder,
    Category,
    DebuggingOptions,
    ELinuxBuildInfo,
    LaunchObserver,
    LaunchResult,
    NullLaunchObserver,
)
from elinux_runner.device.port_forward import (
    CommandPortForwarder,
    NoOpPortForwarder,
    PortForwarder,
    PortForwardState,
)
from elinux_runner.device.process import ProcessHandle, ProcessSupervisor
from elinux_runner.errors import (
    RunnerError,
    bundle_builder_missing_error,
    missing_remote_config_error,
)

logger = structlog.get_logger()

CUSTOM_RUN_ARGS_ENV = "ELINUX_CUSTOM_RUN_ARGS"
LEGACY_CUSTOM_RUN_ARGS_ENV = "FLUTTER_ELINUX_CUSTOM_RUN_ARGS"
REMOTE_APP_PATH = "/tmp/"
BUNDLE_OPTION = "--bundle=./"


class TargetDevice:
    """One deploy target: a remote device driven by templates, or the desktop.

    ``config`` is None for desktop targets. Remote targets install through
    the config's commands and launch with ``runDebug``; desktop targets run
    the built executable directly with engine switches in the environment.
    """

    def __init__(
        self,
        device_id: str,
        *,
        config: TargetConfig | None,
        desktop: bool,
        backend_type: str,
        target_arch: str,
        sdk_name_and_version: str = "",
        supervisor: ProcessSupervisor | None = None,
        lifecycle: RemoteLifecycleController | None = None,
        port_forwarder: PortForwarder | None = None,
        bundle_builder: BundleBuilder | None = None,
        observer: LaunchObserver | None = None,
        project: Any = None,
        environment: Mapping[str, str] | None = None,
    ) -> None:
        if not desktop and config is None:
            raise missing_remote_config_error(device_id)
        self.id = device_id
        self._config = config
        self._desktop = desktop
        self._backend_type = backend_type
        self._target_arch = target_arch
        self._sdk_name_and_version = sdk_name_and_version
        self._supervisor = supervisor or ProcessSupervisor()
        self._lifecycle = lifecycle or (
            RemoteLifecycleController(config) if config is not None else None
        )
        if port_forwarder is None:
            port_forwarder = (
                CommandPortForwarder(
                    config.display_label,
                    config.forward_port,
                    config.forward_port_success_regex or "",
                )
                if config is not None and config.uses_port_forwarding
                else NoOpPortForwarder()
            )
        self.port_forwarder: PortForwarder = port_forwarder
        self._port_state = PortForwardState(port_forwarder)
        self._bundle_builder = bundle_builder
        self._observer: LaunchObserver = observer or NullLaunchObserver()
        self._project = project
        self._environment = os.environ if environment is None else environment
        self._log_reader = LogReader()
        self.current_build_mode = BuildMode.DEBUG

    # ------------------------------------------------------------------
    # Properties

    @property
    def name(self) -> str:
        return "eLinux"

    @property
    def config(self) -> TargetConfig | None:
        return self._config

    @property
    def is_desktop(self) -> bool:
        return self._desktop

    @property
    def category(self) -> Category:
        return Category.DESKTOP if self._desktop else Category.MOBILE

    @property
    def backend_type(self) -> str:
        return self._backend_type

    @property
    def target_arch(self) -> str:
        return self._target_arch

    @property
    def sdk_name_and_version(self) -> str:
        if self._desktop:
            return f"{platform.system()} {platform.release()}".strip()
        return self._sdk_name_and_version

    @property
    def log_reader(self) -> LogReader:
        return self._log_reader

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def forwarded_host_port(self) -> int | None:
        return self._port_state.forwarded_host_port

    def supports_runtime_mode(self, build_mode: BuildMode) -> bool:
        """Record the mode the next install targets; JIT release is unsupported."""
        self.current_build_mode = build_mode
        return build_mode != BuildMode.JIT_RELEASE

    def is_supported_for_project(self, project_dir: str | Path) -> bool:
        return (Path(project_dir) / "elinux").is_dir()

    # ------------------------------------------------------------------
    # Install / uninstall

    async def install_app(self, app: AppBundle) -> bool:
        """Install the bundle built for ``current_build_mode``. Desktop apps run in place."""
        if self._lifecycle is None:
            return True
        bundle_path = app.output_directory(self.current_build_mode, self._target_arch)
        return await self._lifecycle.install(app.name, bundle_path)

    async def uninstall_app(self, app: AppBundle) -> bool:
        if self._lifecycle is None:
            return True
        return await self._lifecycle.uninstall(app.name)

    async def ping(self) -> bool:
        if self._lifecycle is None:
            return True
        return await self._lifecycle.ping()

    # ------------------------------------------------------------------
    # Launch

    async def start_app(
        self,
        app: AppBundle,
        *,
        debugging_options: DebuggingOptions,
        main_path: str | None = None,
        route: str | None = None,
        platform_args: Mapping[str, Any] | None = None,
        prebuilt_application: bool = False,
        ipv6: bool = False,
    ) -> LaunchResult:
        """Start ``app`` and, outside release mode, wait for its VM service URI."""
        if not self._desktop:
            return await self._start_remote_app(app, debugging_options, ipv6=ipv6)

        if not prebuilt_application:
            logger.debug("app_building", app=app.name, device=self.id)
            await self.build_for_device(
                app, build_info=debugging_options.build_info, main_path=main_path
            )

        build_mode = debugging_options.build_info.mode
        trace_startup = bool((platform_args or {}).get("trace-startup", False))
        executable = self.executable_path_for_device(app, build_mode)
        argv = [
            str(executable),
            BUNDLE_OPTION,
            *self._custom_run_args(),
            *debugging_options.dart_entrypoint_args,
        ]
        environment = compute_engine_environment(debugging_options, trace_startup, route)

        try:
            handle = await self._supervisor.spawn(argv, env=environment)
        except RunnerError as exc:
            logger.error(
                "app_launch_failed", app=app.name, device=self.id, command=" ".join(argv), error=str(exc)
            )
            return LaunchResult.failed()

        self._log_reader.attach(handle)
        if debugging_options.build_info.is_release:
            return LaunchResult.succeeded()

        discovery = DebugServiceDiscovery(
            self._log_reader,
            device_port=debugging_options.device_vm_service_port,
            host_port=debugging_options.host_vm_service_port,
            ipv6=ipv6,
        )
        try:
            uri = await discovery.uri()
            if uri is not None:
                self.on_attached(app, build_mode, handle)
                self._observer.notify_debug_attached(uri)
                if not prebuilt_application:
                    self._observer.persist_service_uri(self._project, uri)
                return LaunchResult.succeeded(uri)
            logger.error(
                "debug_connection_failed",
                device=self.id,
                command=" ".join(argv),
                reason="The log reader stopped unexpectedly.",
            )
        except Exception as exc:
            logger.error(
                "debug_connection_failed", device=self.id, command=" ".join(argv), error=str(exc)
            )
        finally:
            discovery.cancel()
        return LaunchResult.failed()

    async def _start_remote_app(
        self, app: AppBundle, debugging_options: DebuggingOptions, *, ipv6: bool
    ) -> LaunchResult:
        assert self._config is not None
        if not await self.install_app(app):
            return LaunchResult.failed()

        argv: list[str] = self._config.run_debug_command
        try:
            argv = self._config.run_debug.expand(
                {"remotePath": REMOTE_APP_PATH, "appName": app.name}
            )
            logger.info("app_launching", app=app.name, target=self._config.id)
            handle = await self._supervisor.spawn(argv)
        except RunnerError as exc:
            logger.error(
                "app_launch_failed",
                app=app.name,
                target=self._config.id,
                command=" ".join(argv),
                error=str(exc),
            )
            return LaunchResult.failed()

        self._log_reader.attach(handle)
        uses_forwarding = self._config.uses_port_forwarding
        discovery = DebugServiceDiscovery(
            self._log_reader,
            port_forwarder=self.port_forwarder if uses_forwarding else None,
            host_port=debugging_options.host_vm_service_port,
            device_port=debugging_options.device_vm_service_port,
            ipv6=ipv6,
        )

        try:
            uri = await discovery.uri()
            if uri is None:
                logger.error(
                    "debug_connection_failed",
                    target=self._config.id,
                    command=" ".join(argv),
                    reason="The log reader stopped unexpectedly.",
                )
                return LaunchResult.failed()
            if uses_forwarding:
                host_port = urlsplit(uri).port
                if host_port is not None:
                    self._port_state.remember(host_port)
            return LaunchResult.succeeded(uri)
        except Exception as exc:
            logger.error(
                "debug_connection_failed",
                target=self._config.id,
                command=" ".join(argv),
                error=str(exc),
            )
            return LaunchResult.failed()
        finally:
            discovery.cancel()

    # ------------------------------------------------------------------
    # Stop

    async def stop_app(self, app: AppBundle | None = None) -> bool:
        """Release the forwarded port, run the stop command, kill local processes."""
        try:
            await self._port_state.release()
        except RunnerError as exc:
            logger.error("port_release_failed", device=self.id, code=exc.code, error=exc.message)

        if not self._desktop and self._lifecycle is not None and app is not None:
            await self._lifecycle.stop(app.name)

        return self._supervisor.kill_all()

    async def dispose(self) -> None:
        await self.port_forwarder.dispose()
        self._log_reader.dispose()

    # ------------------------------------------------------------------
    # Desktop helpers

    async def build_for_device(
        self,
        app: AppBundle,
        *,
        build_info: BuildInfo,
        main_path: str | None = None,
    ) -> Path:
        if self._bundle_builder is None:
            raise bundle_builder_missing_error(app.name)
        elinux_build_info = ELinuxBuildInfo(
            build_info,
            target_arch=self._target_arch,
            target_backend_type=self._backend_type,
            target_sysroot="/",
        )
        return await self._bundle_builder.build_bundle(
            self._project, main_path, elinux_build_info
        )

    def executable_path_for_device(self, app: AppBundle, build_mode: BuildMode) -> Path:
        return app.executable(build_mode, self._target_arch)

    def on_attached(self, app: AppBundle, build_mode: BuildMode, handle: ProcessHandle) -> None:
        """Hook for subclasses; runs once the VM service URI is known."""

    def _custom_run_args(self) -> list[str]:
        custom_args = self._environment.get(LEGACY_CUSTOM_RUN_ARGS_ENV)
        if custom_args is None:
            custom_args = self._environment.get(CUSTOM_RUN_ARGS_ENV)
        if custom_args is not None:
            return custom_args.split()
        if self._desktop and self._backend_type == "wayland":
            return ["-d"]
        return []

    def __repr__(self) -> str:
        return f"TargetDevice(id={self.id!r}, desktop={self._desktop}, backend={self._backend_type!r})"
