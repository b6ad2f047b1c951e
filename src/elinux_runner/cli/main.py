"""CLI entry point using Typer."""

from __future__ import annotations

import typer

from elinux_runner.cli.commands import app_cmd, target
from elinux_runner.cli.utils import configure_logging

app = typer.Typer(
    name="elinux-runner",
    help="Deploy and run app bundles on embedded Linux targets",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs on stderr"),
) -> None:
    configure_logging(verbose)


@app.command()
def version() -> None:
    """Show version information."""
    from elinux_runner import __version__

    typer.echo(f"elinux-runner v{__version__}")


app.add_typer(target.app, name="target")
app.add_typer(app_cmd.app, name="app")


if __name__ == "__main__":
    app()
