"""App management CLI commands."""

from __future__ import annotations

from pathlib import Path

import typer

from elinux_runner.cli.utils import echo_result, render_error, resolve_device, run_async
from elinux_runner.device.facade import TargetDevice
from elinux_runner.device.models import AppBundle, BuildInfo, BuildMode, DebuggingOptions
from elinux_runner.errors import RunnerError
from elinux_runner.validation import validate_app_name, validate_port

app = typer.Typer(help="App management commands")

DEFAULT_BUILD_DIR = "build/elinux"


def _bundle(app_name: str, build_dir: str, binary_name: str | None) -> AppBundle:
    try:
        validate_app_name(app_name)
    except RunnerError as exc:
        render_error(exc)
    return AppBundle(app_name, build_dir=Path(build_dir), binary_name=binary_name)


def _check_mode(device: TargetDevice, mode: BuildMode) -> None:
    if not device.supports_runtime_mode(mode):
        typer.echo(f"Error: {mode.value} mode is not supported on {device.id}")
        raise typer.Exit(code=1)


@app.command("install")
def app_install(
    target_id: str = typer.Argument(..., help="Target ID"),
    app_name: str = typer.Argument(..., help="App name"),
    mode: BuildMode = typer.Option(BuildMode.DEBUG, "--mode", "-m", help="Build mode"),
    build_dir: str = typer.Option(DEFAULT_BUILD_DIR, "--build-dir", help="Build output root"),
    config_path: str | None = typer.Option(None, "--config", help="Targets file path"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Install a built bundle on the target."""
    bundle = _bundle(app_name, build_dir, None)
    device = resolve_device(target_id, config_path)
    _check_mode(device, mode)
    installed = run_async(device.install_app(bundle), json_output=json_output)
    echo_result(
        installed,
        f"Installed {app_name} on {target_id}",
        f"Failed to install {app_name} on {target_id}",
        json_output,
        target=target_id,
        app=app_name,
    )


@app.command("uninstall")
def app_uninstall(
    target_id: str = typer.Argument(..., help="Target ID"),
    app_name: str = typer.Argument(..., help="App name"),
    config_path: str | None = typer.Option(None, "--config", help="Targets file path"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Remove an app from the target."""
    bundle = _bundle(app_name, DEFAULT_BUILD_DIR, None)
    device = resolve_device(target_id, config_path)
    uninstalled = run_async(device.uninstall_app(bundle), json_output=json_output)
    echo_result(
        uninstalled,
        f"Uninstalled {app_name} from {target_id}",
        f"Failed to uninstall {app_name} from {target_id}",
        json_output,
        target=target_id,
        app=app_name,
    )


@app.command("stop")
def app_stop(
    target_id: str = typer.Argument(..., help="Target ID"),
    app_name: str = typer.Argument(..., help="App name"),
    config_path: str | None = typer.Option(None, "--config", help="Targets file path"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Run the target's stop command for an app."""
    bundle = _bundle(app_name, DEFAULT_BUILD_DIR, None)
    device = resolve_device(target_id, config_path)
    stopped = run_async(device.stop_app(bundle), json_output=json_output)
    echo_result(
        stopped,
        f"Stopped {app_name} on {target_id}",
        f"Failed to stop {app_name} on {target_id}",
        json_output,
        target=target_id,
        app=app_name,
    )


async def _run_app(
    device: TargetDevice,
    bundle: AppBundle,
    options: DebuggingOptions,
    *,
    route: str | None,
    trace_startup: bool,
    ipv6: bool,
) -> bool:
    subscription = device.log_reader.subscribe()
    try:
        result = await device.start_app(
            bundle,
            debugging_options=options,
            route=route,
            platform_args={"trace-startup": trace_startup},
            prebuilt_application=True,
            ipv6=ipv6,
        )
        if not result.started:
            return False
        if result.service_uri:
            typer.echo(f"VM service available at {result.service_uri}")
        async for line in subscription:
            typer.echo(line)
        return True
    finally:
        subscription.close()
        await device.stop_app(bundle)
        await device.dispose()


@app.command("run")
def app_run(
    target_id: str = typer.Argument(..., help="Target ID"),
    app_name: str = typer.Argument(..., help="App name"),
    mode: BuildMode = typer.Option(BuildMode.DEBUG, "--mode", "-m", help="Build mode"),
    build_dir: str = typer.Option(DEFAULT_BUILD_DIR, "--build-dir", help="Build output root"),
    binary_name: str | None = typer.Option(None, "--binary", help="Executable name in the bundle"),
    host_port: int | None = typer.Option(None, "--host-port", help="Host VM service port"),
    device_port: int | None = typer.Option(
        None, "--device-port", help="VM service port on the device"
    ),
    start_paused: bool = typer.Option(False, "--start-paused", help="Pause isolates on start"),
    disable_auth_codes: bool = typer.Option(
        False, "--disable-service-auth-codes", help="Disable VM service auth codes"
    ),
    verbose_logs: bool = typer.Option(False, "--verbose-system-logs", help="Verbose engine logs"),
    dart_flags: str = typer.Option("", "--dart-flags", help="Flags passed to the Dart VM"),
    route: str | None = typer.Option(None, "--route", help="Initial route"),
    trace_startup: bool = typer.Option(False, "--trace-startup", help="Trace app startup"),
    ipv6: bool = typer.Option(False, "--ipv6", help="Use the IPv6 loopback"),
    config_path: str | None = typer.Option(None, "--config", help="Targets file path"),
) -> None:
    """Launch a prebuilt bundle, stream its logs and stop it on exit."""
    bundle = _bundle(app_name, build_dir, binary_name)
    for port in (host_port, device_port):
        if port is not None:
            try:
                validate_port(port)
            except RunnerError as exc:
                render_error(exc)
    device = resolve_device(target_id, config_path)
    _check_mode(device, mode)

    build_info = BuildInfo(mode=mode)
    debug_settings = {
        "start_paused": start_paused,
        "disable_service_auth_codes": disable_auth_codes,
        "verbose_system_logs": verbose_logs,
        "dart_flags": dart_flags,
        "host_vm_service_port": host_port,
        "device_vm_service_port": device_port,
    }
    options = (
        DebuggingOptions.disabled(build_info)
        if build_info.is_release
        else DebuggingOptions(build_info=build_info, **debug_settings)
    )

    try:
        started = run_async(
            _run_app(
                device, bundle, options, route=route, trace_startup=trace_startup, ipv6=ipv6
            )
        )
    except KeyboardInterrupt:
        typer.echo("Interrupted, app stopped")
        return
    if not started:
        typer.echo(f"✗ Failed to launch {app_name} on {target_id}")
        raise typer.Exit(code=1)
