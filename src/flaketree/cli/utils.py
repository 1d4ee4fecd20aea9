"""CLI utilities."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any, TypeVar

import click
from rich.markup import escape
from rich.tree import Tree

from flaketree.config.constants import FLAKE_FILE
from flaketree.config.loader import load_config
from flaketree.core.errors import FlakeTreeError, MalformedPathError
from flaketree.core.logging import configure_logging
from flaketree.core.progress import status
from flaketree.daemon.lifecycle import ExplorerController
from flaketree.tree.events import StatusChanged, StatusLevel, TreeEvent
from flaketree.tree.models import Node, NodeKind
from flaketree.tree.paths import AttrPath

F = TypeVar("F", bound=Callable[..., Any])

_KIND_STYLES = {
    NodeKind.NAMESPACE: "bold",
    NodeKind.COLLECTION: "magenta",
    NodeKind.COLLECTION_ELEMENT: "magenta",
    NodeKind.DERIVED_ARTIFACT: "cyan",
    NodeKind.SCALAR: "green",
    NodeKind.UNRESOLVED: "dim",
    NodeKind.FAILED: "red",
}

_STATUS_STYLES = {
    StatusLevel.INFO: "info",
    StatusLevel.SUCCESS: "success",
    StatusLevel.ERROR: "error",
}


def find_flake_root(start_path: Path | None = None) -> Path:
    """Find the nearest directory containing flake.nix, walking up from start_path.

    Raises:
        click.ClickException: If no flake.nix is found
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()
    for candidate in (current, *current.parents):
        if (candidate / FLAKE_FILE).is_file():
            return candidate

    raise click.ClickException(
        f"No {FLAKE_FILE} found in {start_path} or any parent directory.\n"
        "Run from inside a flake or pass --flake DIR."
    )


def flake_options(func: F) -> F:
    """Add --flake and --root to a command."""
    func = click.option(
        "--root",
        default=None,
        help="Attribute path used as the tree root. Pass '' to list the flake outputs.",
    )(func)
    func = click.option(
        "--flake",
        "flake",
        type=click.Path(file_okay=False, path_type=Path),
        default=None,
        help="Flake directory (default: nearest parent containing flake.nix).",
    )(func)
    return func


def make_controller(flake: Path | None, root: str | None) -> ExplorerController:
    """Load config for the flake and build an explorer on it."""
    flake_dir = flake.resolve() if flake is not None else find_flake_root()
    try:
        config = load_config(flake_dir)
        if root is not None:
            config.explorer.root_path = root
        ctx = click.get_current_context(silent=True)
        if ctx is None or not (ctx.obj or {}).get("verbose"):
            configure_logging(config=config.logging)
        return ExplorerController(flake_dir=flake_dir, config=config)
    except FlakeTreeError as e:
        raise click.ClickException(str(e)) from e


def parse_path_argument(controller: ExplorerController, display: str) -> AttrPath:
    """Parse a PATH argument relative to the controller's root."""
    try:
        return controller.resolve_path(display)
    except MalformedPathError as e:
        raise click.BadParameter(e.message, param_hint="PATH") from e


def echo_status(event: TreeEvent) -> None:
    """Event bus subscriber printing error statuses to stderr."""
    if isinstance(event, StatusChanged) and event.level is StatusLevel.ERROR:
        status(escape(event.message), style=_STATUS_STYLES[event.level])


def check_halted(controller: ExplorerController) -> None:
    if (halted := controller.resolver.halted) is not None:
        raise click.ClickException(halted.message)


def format_node(node: Node) -> str:
    """Rich markup for one tree row."""
    style = _KIND_STYLES.get(node.kind, "")
    text = f"[{style}]{escape(node.label)}[/{style}]" if style else escape(node.label)
    if node.artifact or node.kind is NodeKind.DERIVED_ARTIFACT:
        text += " [cyan](drv)[/cyan]"
    if node.error:
        text += f" [red]{escape(node.error)}[/red]"
    elif node.description:
        text += f" [dim]{escape(node.description)}[/dim]"
    return text


def build_tree(controller: ExplorerController) -> Tree:
    """Render every cached, expanded path below the root as a rich Tree."""
    title = str(controller.root) or "(flake outputs)"
    tree = Tree(f"[bold]{escape(title)}[/bold]")
    _add_branch(tree, controller, controller.root)
    return tree


def _add_branch(branch: Tree, controller: ExplorerController, path: AttrPath) -> None:
    entry = controller.cache.get(path)
    if entry is None:
        return
    resolved = entry.value or entry.last_good
    if resolved is None:
        if entry.error:
            branch.add(f"[red]error:[/red] {escape(entry.error)}")
        return
    for node in resolved.children:
        sub = branch.add(format_node(node))
        if node.expandable and controller.tracker.is_expanded(node.path):
            _add_branch(sub, controller, node.path)
