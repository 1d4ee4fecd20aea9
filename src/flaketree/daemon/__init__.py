"""Long-running explorer: file watcher and lifecycle controller."""

from flaketree.daemon.lifecycle import ExplorerController, resolve_root
from flaketree.daemon.watcher import FileWatcher, matches_patterns

__all__ = ["ExplorerController", "FileWatcher", "matches_patterns", "resolve_root"]
