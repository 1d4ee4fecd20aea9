"""flaketree complete command - autocomplete an attribute path."""

import asyncio
from pathlib import Path

import click

from flaketree.cli.utils import check_halted, echo_status, flake_options, make_controller
from flaketree.config.constants import SEARCH_SUGGESTIONS_MAX


@click.command()
@click.argument("query", default="")
@flake_options
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=SEARCH_SUGGESTIONS_MAX,
    show_default=True,
    help="Maximum number of suggestions.",
)
def complete_command(query: str, flake: Path | None, root: str | None, limit: int) -> None:
    """Suggest root-relative paths for a partially typed QUERY.

    The parent of QUERY (everything before the last dot) is evaluated
    first, so its children are always candidates.
    """
    controller = make_controller(flake, root)
    controller.events.subscribe(echo_status)
    suggestions = asyncio.run(controller.suggest(query, limit))
    check_halted(controller)
    for suggestion in suggestions:
        click.echo(suggestion)
