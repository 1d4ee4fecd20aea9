"""flaketree ls command - list the children of an attribute path."""

import asyncio
import json
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from flaketree.cli.utils import (
    check_halted,
    echo_status,
    flake_options,
    format_node,
    make_controller,
    parse_path_argument,
)
from flaketree.core.progress import spinner
from flaketree.tree.models import Node, NodeKind
from flaketree.tree.search import PathFilter


@click.command()
@click.argument("path", default="")
@flake_options
@click.option("--filter", "filter_text", default="", help="Only show matching children.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def ls_command(
    path: str,
    flake: Path | None,
    root: str | None,
    filter_text: str,
    as_json: bool,
) -> None:
    """List the children of PATH.

    PATH is relative to the configured root (default: the root itself).
    """
    controller = make_controller(flake, root)
    target = parse_path_argument(controller, path)
    path_filter = PathFilter(filter_text, controller.root) if filter_text else None

    controller.events.subscribe(echo_status)
    with spinner(f"Evaluating {str(target) or '(flake outputs)'}"):
        nodes = asyncio.run(controller.expand(target, path_filter=path_filter))
    check_halted(controller)

    if as_json:
        click.echo(json.dumps([node.to_dict() for node in nodes], indent=2))
    else:
        _print_table(nodes)

    if nodes and all(node.kind is NodeKind.FAILED for node in nodes):
        raise SystemExit(1)


def _print_table(nodes: list[Node]) -> None:
    console = Console()
    if not nodes:
        console.print("[dim](no children)[/dim]")
        return
    table = Table(box=None, show_header=False, pad_edge=False)
    table.add_column("name", no_wrap=True)
    table.add_column("kind", style="dim")
    for node in nodes:
        table.add_row(format_node(node), node.kind.value)
    console.print(table)
