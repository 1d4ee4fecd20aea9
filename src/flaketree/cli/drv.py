"""flaketree drv command - build metadata of a derivation."""

import asyncio
import json
from pathlib import Path

import click

from flaketree.cli.utils import check_halted, flake_options, make_controller, parse_path_argument
from flaketree.core.progress import spinner


@click.command()
@click.argument("path")
@flake_options
def drv_command(path: str, flake: Path | None, root: str | None) -> None:
    """Show the derivation (inputs, outputs, env) behind the package at PATH."""
    controller = make_controller(flake, root)
    target = parse_path_argument(controller, path)
    check_halted(controller)

    with spinner(f"Instantiating {target}"):
        result = asyncio.run(controller.derivation_info(target))

    if not result.ok:
        raise click.ClickException(f"{target}: {result.error}")
    click.echo(json.dumps(result.data, indent=2, sort_keys=True))
