"""flaketree CLI - flaketree command."""

import click

from flaketree import __version__
from flaketree.cli.complete import complete_command
from flaketree.cli.drv import drv_command
from flaketree.cli.ls import ls_command
from flaketree.cli.show import show_command
from flaketree.cli.watch import watch_command
from flaketree.core.logging import configure_logging


@click.group()
@click.version_option(version=__version__, prog_name="flaketree")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """flaketree - Lazily explore the attribute tree of a Nix flake."""
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose
    configure_logging(level="DEBUG" if verbose else "WARNING")


cli.add_command(ls_command, name="ls")
cli.add_command(show_command, name="show")
cli.add_command(drv_command, name="drv")
cli.add_command(complete_command, name="complete")
cli.add_command(watch_command, name="watch")


if __name__ == "__main__":
    cli()
