"""Target management CLI commands."""

from __future__ import annotations

import typer

from elinux_runner.cli.utils import (
    echo_result,
    format_json,
    load_devices,
    render_error,
    resolve_device,
    run_async,
)
from elinux_runner.errors import RunnerError

app = typer.Typer(help="Target management commands")


@app.command("list")
def target_list(
    config_path: str | None = typer.Option(None, "--config", help="Targets file path"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """List desktop and configured remote targets."""
    try:
        devices = load_devices(config_path)
    except RunnerError as exc:
        render_error(exc, json_output=json_output)

    rows = [
        {
            "id": device.id,
            "label": device.config.display_label if device.config else device.id,
            "category": device.category.value,
            "backend": device.backend_type,
            "arch": device.target_arch,
            "sdk": device.sdk_name_and_version,
            "port_forwarding": bool(device.config and device.config.uses_port_forwarding),
        }
        for device in devices
    ]
    if json_output:
        typer.echo(format_json({"targets": rows}))
        return

    if not rows:
        typer.echo("No targets available")
        return
    for row in rows:
        typer.echo(
            f"{row['id']}  label={row['label']} category={row['category']} "
            f"backend={row['backend']} arch={row['arch']} sdk={row['sdk']}"
        )


@app.command("ping")
def target_ping(
    target_id: str = typer.Argument(..., help="Target ID"),
    config_path: str | None = typer.Option(None, "--config", help="Targets file path"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Check that a target is reachable."""
    device = resolve_device(target_id, config_path)
    reachable = run_async(device.ping(), json_output=json_output)
    echo_result(
        reachable,
        f"{target_id} is reachable",
        f"{target_id} is not reachable",
        json_output,
        target=target_id,
    )
