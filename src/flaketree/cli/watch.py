"""flaketree watch command - keep a tree up to date while the flake changes."""

import asyncio
from pathlib import Path

import click
from rich.console import Console
from rich.markup import escape

from flaketree.cli.utils import build_tree, check_halted, flake_options, make_controller
from flaketree.core.errors import MalformedPathError
from flaketree.core.progress import status
from flaketree.daemon.lifecycle import ExplorerController
from flaketree.tree.events import (
    NodeUpdated,
    RefreshCompleted,
    StatusChanged,
    StatusLevel,
    TreeEvent,
    TreeReset,
)
from flaketree.tree.paths import AttrPath

# Coalesce bursts of NodeUpdated into one redraw
REDRAW_DELAY_SEC = 0.2

_STATUS_STYLES = {
    StatusLevel.INFO: "info",
    StatusLevel.SUCCESS: "success",
    StatusLevel.ERROR: "error",
}


@click.command()
@click.argument("paths", nargs=-1)
@flake_options
def watch_command(paths: tuple[str, ...], flake: Path | None, root: str | None) -> None:
    """Print the tree with PATHS expanded and reprint it whenever the flake changes.

    Runs until interrupted (Ctrl+C).
    """
    controller = make_controller(flake, root)
    try:
        expanded = [controller.resolve_path(p) for p in paths]
    except MalformedPathError as e:
        raise click.BadParameter(e.message, param_hint="PATHS") from e

    try:
        asyncio.run(_watch(controller, expanded))
    except KeyboardInterrupt:
        status("Stopped", style="info")
    check_halted(controller)


async def _watch(controller: ExplorerController, expanded: list[AttrPath]) -> None:
    console = Console()
    dirty = asyncio.Event()

    def on_event(event: TreeEvent) -> None:
        if isinstance(event, NodeUpdated | TreeReset | RefreshCompleted):
            dirty.set()
        elif isinstance(event, StatusChanged) and event.level is not StatusLevel.SUCCESS:
            status(escape(event.message), style=_STATUS_STYLES[event.level])

    unsubscribe = controller.events.subscribe(on_event)
    try:
        await controller.start()
        while controller.resolver.halted is None:
            # After a full refresh expansions are gone; re-open what was asked for
            for path in expanded:
                await controller.expand(path)
            dirty.clear()
            console.print(build_tree(controller))
            await dirty.wait()
            await asyncio.sleep(REDRAW_DELAY_SEC)
    finally:
        unsubscribe()
        await controller.stop()
