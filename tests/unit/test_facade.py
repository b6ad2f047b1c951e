"""Tests for TargetDevice."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from elinux_runner.config.models import TargetConfig
from elinux_runner.device.facade import TargetDevice
from elinux_runner.device.lifecycle import RemoteLifecycleController
from elinux_runner.device.log_reader import LogReader
from elinux_runner.device.models import (
    AppBundle,
    BuildInfo,
    BuildMode,
    Category,
    DebuggingOptions,
    ELinuxBuildInfo,
)
from elinux_runner.errors import RunnerError

VM_SERVICE_LINE = "The Dart VM service is listening on http://127.0.0.1:{port}/abc=/"


def _desktop(**kwargs: Any) -> TargetDevice:
    kwargs.setdefault("environment", {})
    return TargetDevice(
        "elinux-wayland",
        config=None,
        desktop=True,
        backend_type="wayland",
        target_arch="x64",
        **kwargs,
    )


def _remote(config: TargetConfig, runner: Any) -> TargetDevice:
    return TargetDevice(
        config.id,
        config=config,
        desktop=False,
        backend_type=config.backend,
        target_arch=config.platform,
        lifecycle=RemoteLifecycleController(config, runner=runner),
    )


async def _wait_idle(device: TargetDevice) -> None:
    handles = device.supervisor.running
    await asyncio.wait_for(asyncio.gather(*(h.wait() for h in handles)), timeout=10)


async def _wait_closed(reader: LogReader) -> None:
    while not reader.is_closed:
        await asyncio.sleep(0.01)


class TestProperties:
    """Tests for device properties."""

    def test_desktop_properties(self) -> None:
        device = _desktop()

        assert device.name == "eLinux"
        assert device.category is Category.DESKTOP
        assert device.is_desktop
        assert device.sdk_name_and_version

    def test_remote_properties(
        self, make_config: Callable[..., TargetConfig], fake_runner: Any
    ) -> None:
        device = _remote(make_config(), fake_runner)

        assert device.category is Category.MOBILE
        assert device.sdk_name_and_version == "Yocto 4.0"

    def test_remote_requires_config(self) -> None:
        with pytest.raises(RunnerError) as exc_info:
            TargetDevice(
                "rpi", config=None, desktop=False, backend_type="wayland", target_arch="arm64"
            )

        assert exc_info.value.code == "ERR_MISSING_REMOTE_CONFIG"

    def test_supports_runtime_mode(self) -> None:
        device = _desktop()

        assert device.supports_runtime_mode(BuildMode.PROFILE) is True
        assert device.current_build_mode is BuildMode.PROFILE
        assert device.supports_runtime_mode(BuildMode.JIT_RELEASE) is False

    def test_is_supported_for_project(self, tmp_path: Path) -> None:
        device = _desktop()

        assert device.is_supported_for_project(tmp_path) is False
        (tmp_path / "elinux").mkdir()
        assert device.is_supported_for_project(tmp_path) is True

    def test_port_forwarder_choice(
        self, make_config: Callable[..., TargetConfig], fake_runner: Any
    ) -> None:
        plain = _remote(make_config(), fake_runner)
        tunnelled = _remote(
            make_config(
                forwardPort=["ssh", "-L", "${hostPort}:localhost:${devicePort}"],
                forwardPortSuccessRegex=".*",
            ),
            fake_runner,
        )

        assert type(plain.port_forwarder).__name__ == "NoOpPortForwarder"
        assert type(tunnelled.port_forwarder).__name__ == "CommandPortForwarder"


class TestInstall:
    """Tests for install/uninstall through the device."""

    @pytest.mark.asyncio
    async def test_desktop_install_is_noop(self) -> None:
        device = _desktop()

        assert await device.install_app(AppBundle("hello")) is True
        assert await device.uninstall_app(AppBundle("hello")) is True

    @pytest.mark.asyncio
    async def test_remote_install_uses_build_mode_bundle(
        self, make_config: Callable[..., TargetConfig], fake_runner: Any
    ) -> None:
        device = _remote(make_config(), fake_runner)
        device.supports_runtime_mode(BuildMode.RELEASE)

        assert await device.install_app(AppBundle("hello")) is True

        assert fake_runner.commands[-1] == [
            "install",
            str(Path("build/elinux/arm64/release/bundle")),
            "hello",
        ]


class TestDesktopLaunch:
    """Tests for launching on the desktop."""

    @pytest.mark.asyncio
    async def test_debug_launch_reports_uri(
        self, tmp_path: Path, write_executable: Callable[[Path, str], Path]
    ) -> None:
        bundle = AppBundle("hello", build_dir=tmp_path)
        write_executable(
            bundle.executable(BuildMode.DEBUG, "x64"),
            f'echo "{VM_SERVICE_LINE.format(port=8181)}"\nexec sleep 30',
        )
        observer = MagicMock()
        device = _desktop(observer=observer)
        options = DebuggingOptions(device_vm_service_port=8181)

        result = await asyncio.wait_for(
            device.start_app(bundle, debugging_options=options, prebuilt_application=True),
            timeout=10,
        )

        assert result.started
        assert result.service_uri == "http://127.0.0.1:8181/abc=/"
        observer.notify_debug_attached.assert_called_once_with("http://127.0.0.1:8181/abc=/")
        observer.persist_service_uri.assert_not_called()
        [handle] = device.supervisor.running
        assert handle.argv == [str(bundle.executable(BuildMode.DEBUG, "x64")), "--bundle=./", "-d"]

        assert await device.stop_app(bundle) is True
        await asyncio.wait_for(handle.wait(), timeout=10)
        assert len(device.supervisor) == 0

    @pytest.mark.asyncio
    async def test_engine_switches_reach_process(
        self, tmp_path: Path, write_executable: Callable[[Path, str], Path]
    ) -> None:
        bundle = AppBundle("hello", build_dir=tmp_path)
        write_executable(
            bundle.executable(BuildMode.DEBUG, "x64"),
            'echo "switches=$FLUTTER_ENGINE_SWITCHES first=$FLUTTER_ENGINE_SWITCH_1"\n'
            f'echo "{VM_SERVICE_LINE.format(port=8181)}"\nexec sleep 30',
        )
        device = _desktop()
        subscription = device.log_reader.subscribe()

        result = await asyncio.wait_for(
            device.start_app(
                bundle,
                debugging_options=DebuggingOptions(),
                prebuilt_application=True,
            ),
            timeout=10,
        )
        first_line = await asyncio.wait_for(anext(subscription), timeout=10)

        assert result.started
        assert first_line == "switches=3 first=enable-dart-profiling=true"
        subscription.close()
        await device.stop_app(bundle)
        await _wait_idle(device)

    @pytest.mark.asyncio
    async def test_release_launch_returns_immediately(
        self, tmp_path: Path, write_executable: Callable[[Path, str], Path]
    ) -> None:
        bundle = AppBundle("hello", build_dir=tmp_path)
        write_executable(bundle.executable(BuildMode.RELEASE, "x64"), "exec sleep 30")
        device = _desktop()
        options = DebuggingOptions.disabled(BuildInfo(mode=BuildMode.RELEASE))

        result = await asyncio.wait_for(
            device.start_app(bundle, debugging_options=options, prebuilt_application=True),
            timeout=5,
        )

        assert result.started
        assert result.service_uri is None
        assert len(device.supervisor) == 1
        assert await device.stop_app(bundle) is True
        await _wait_idle(device)

    @pytest.mark.asyncio
    async def test_custom_run_args(
        self, tmp_path: Path, write_executable: Callable[[Path, str], Path]
    ) -> None:
        bundle = AppBundle("hello", build_dir=tmp_path)
        write_executable(bundle.executable(BuildMode.RELEASE, "x64"), "exec sleep 30")
        device = _desktop(environment={"ELINUX_CUSTOM_RUN_ARGS": "--fullscreen --rotation=90"})
        options = DebuggingOptions.disabled(
            BuildInfo(mode=BuildMode.RELEASE), dart_entrypoint_args=("--flavor",)
        )

        await device.start_app(bundle, debugging_options=options, prebuilt_application=True)

        [handle] = device.supervisor.running
        assert handle.argv[1:] == ["--bundle=./", "--fullscreen", "--rotation=90", "--flavor"]
        await device.stop_app(bundle)
        await _wait_idle(device)

    @pytest.mark.parametrize(
        ("environment", "expected"),
        [
            (
                {"ELINUX_CUSTOM_RUN_ARGS": "  --fullscreen   --rotation=90 "},
                ["--fullscreen", "--rotation=90"],
            ),
            ({"ELINUX_CUSTOM_RUN_ARGS": ""}, []),
            (
                {"FLUTTER_ELINUX_CUSTOM_RUN_ARGS": "--fullscreen", "ELINUX_CUSTOM_RUN_ARGS": "-d"},
                ["--fullscreen"],
            ),
            ({}, ["-d"]),
        ],
    )
    def test_custom_run_args_sources(
        self, environment: dict[str, str], expected: list[str]
    ) -> None:
        assert _desktop(environment=environment)._custom_run_args() == expected

    @pytest.mark.asyncio
    async def test_exit_without_uri_fails(
        self, tmp_path: Path, write_executable: Callable[[Path, str], Path]
    ) -> None:
        bundle = AppBundle("hello", build_dir=tmp_path)
        write_executable(bundle.executable(BuildMode.DEBUG, "x64"), "echo crashed\nexit 1")
        device = _desktop()

        result = await asyncio.wait_for(
            device.start_app(
                bundle, debugging_options=DebuggingOptions(), prebuilt_application=True
            ),
            timeout=10,
        )

        assert not result.started
        assert device.log_reader._subscribers == set()

    @pytest.mark.asyncio
    async def test_missing_executable_fails(self, tmp_path: Path) -> None:
        device = _desktop()

        result = await device.start_app(
            AppBundle("hello", build_dir=tmp_path),
            debugging_options=DebuggingOptions(),
            prebuilt_application=True,
        )

        assert not result.started
        assert len(device.supervisor) == 0

    @pytest.mark.asyncio
    async def test_build_before_launch(
        self, tmp_path: Path, write_executable: Callable[[Path, str], Path]
    ) -> None:
        bundle = AppBundle("hello", build_dir=tmp_path)
        executable = bundle.executable(BuildMode.DEBUG, "x64")

        async def build_bundle(
            project: Any, target_file: str | None, build_info: ELinuxBuildInfo
        ) -> Path:
            script = f'echo "{VM_SERVICE_LINE.format(port=8181)}"\nexec sleep 30'
            write_executable(executable, script)
            return executable.parent

        builder = MagicMock()
        builder.build_bundle = AsyncMock(side_effect=build_bundle)
        observer = MagicMock()
        project = object()
        device = _desktop(bundle_builder=builder, observer=observer, project=project)

        result = await asyncio.wait_for(
            device.start_app(
                bundle, debugging_options=DebuggingOptions(), main_path="lib/main.dart"
            ),
            timeout=10,
        )

        assert result.started
        _, target_file, build_info = builder.build_bundle.await_args.args
        assert target_file == "lib/main.dart"
        assert build_info.target_sysroot == "/"
        assert build_info.target_arch == "x64"
        assert build_info.target_backend_type == "wayland"
        observer.persist_service_uri.assert_called_once_with(project, result.service_uri)
        await device.stop_app(bundle)
        await _wait_idle(device)

    @pytest.mark.asyncio
    async def test_build_without_builder_raises(self) -> None:
        device = _desktop()

        with pytest.raises(RunnerError) as exc_info:
            await device.start_app(AppBundle("hello"), debugging_options=DebuggingOptions())

        assert exc_info.value.code == "ERR_BUNDLE_BUILDER_MISSING"


class TestRemoteLaunch:
    """Tests for launching on a remote target."""

    @pytest.mark.asyncio
    async def test_forwarded_launch_until_stop(
        self, make_config: Callable[..., TargetConfig], fake_runner: Any
    ) -> None:
        config = make_config(
            runDebug=[
                "sh",
                "-c",
                f'echo "{VM_SERVICE_LINE.format(port=5000)}"; exec sleep 30',
                "${remotePath}${appName}",
            ],
            forwardPort=["sh", "-c", 'echo "forwarding $0"; exec sleep 30', "${hostPort}"],
            forwardPortSuccessRegex=r"forwarding (\d+)",
        )
        device = _remote(config, fake_runner)
        options = DebuggingOptions(host_vm_service_port=37000)

        result = await asyncio.wait_for(
            device.start_app(AppBundle("hello"), debugging_options=options), timeout=10
        )

        assert result.started
        assert result.service_uri == "http://127.0.0.1:37000/abc=/"
        assert device.forwarded_host_port == 37000
        assert [p.host_port for p in device.port_forwarder.forwarded_ports] == [37000]
        assert fake_runner.commands[:2] == [
            ["uninstall", "hello"],
            ["install", str(Path("build/elinux/arm64/debug/bundle")), "hello"],
        ]
        [handle] = device.supervisor.running
        assert handle.argv[-1] == "/tmp/hello"

        assert await device.stop_app(AppBundle("hello")) is True

        assert device.forwarded_host_port is None
        assert device.port_forwarder.forwarded_ports == []
        assert fake_runner.calls[-1] == (["stop", "hello"], 10.0)
        await asyncio.wait_for(handle.wait(), timeout=10)

    @pytest.mark.asyncio
    async def test_relaunch_after_exit(
        self, make_config: Callable[..., TargetConfig], fake_runner: Any
    ) -> None:
        config = make_config(
            runDebug=["sh", "-c", f'echo "{VM_SERVICE_LINE.format(port=5000)}"', "${appName}"]
        )
        device = _remote(config, fake_runner)
        options = DebuggingOptions()

        first = await asyncio.wait_for(
            device.start_app(AppBundle("hello"), debugging_options=options), timeout=10
        )
        await asyncio.wait_for(_wait_closed(device.log_reader), timeout=10)
        second = await asyncio.wait_for(
            device.start_app(AppBundle("hello"), debugging_options=options), timeout=10
        )

        assert first.started
        assert second.started
        assert second.service_uri == "http://127.0.0.1:5000/abc=/"
        await device.stop_app(AppBundle("hello"))

    @pytest.mark.asyncio
    async def test_install_failure_skips_launch(
        self, make_config: Callable[..., TargetConfig], make_runner: Callable[..., Any]
    ) -> None:
        device = _remote(make_config(), make_runner(failing=["install"]))

        result = await device.start_app(AppBundle("hello"), debugging_options=DebuggingOptions())

        assert not result.started
        assert len(device.supervisor) == 0

    @pytest.mark.asyncio
    async def test_spawn_failure(
        self, make_config: Callable[..., TargetConfig], fake_runner: Any
    ) -> None:
        config = make_config(runDebug=["/nonexistent/elinux-run", "${appName}"])
        device = _remote(config, fake_runner)

        result = await device.start_app(AppBundle("hello"), debugging_options=DebuggingOptions())

        assert not result.started

    @pytest.mark.asyncio
    async def test_stop_survives_missing_forward_record(
        self, make_config: Callable[..., TargetConfig], fake_runner: Any
    ) -> None:
        device = _remote(make_config(), fake_runner)
        device._port_state.remember(37000)

        assert await device.stop_app(AppBundle("hello")) is True

        assert device.forwarded_host_port is None
        assert fake_runner.commands == [["stop", "hello"]]
