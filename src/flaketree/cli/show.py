"""flaketree show command - print the full value at an attribute path."""

import asyncio
import json
from pathlib import Path

import click

from flaketree.cli.utils import check_halted, flake_options, make_controller, parse_path_argument
from flaketree.core.progress import spinner


@click.command()
@click.argument("path")
@flake_options
def show_command(path: str, flake: Path | None, root: str | None) -> None:
    """Print the value at PATH as JSON."""
    controller = make_controller(flake, root)
    target = parse_path_argument(controller, path)
    check_halted(controller)

    with spinner(f"Evaluating {target}"):
        result = asyncio.run(controller.value(target))

    if not result.ok:
        raise click.ClickException(f"{target}: {result.error}")
    if isinstance(result.data, str):
        click.echo(result.data)
    else:
        click.echo(json.dumps(result.data, indent=2, sort_keys=True))
