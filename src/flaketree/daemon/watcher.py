"""Flake source watcher using watchfiles for async filesystem monitoring.

Design:
- One recursive awatch on the flake directory
- A watch filter keeps only paths matching the configured glob patterns
  (``flake.nix``, ``flake.lock``, ``**/*.nix`` by default)
- Falls back to polling for cross-filesystem mounts (WSL /mnt/*)
- A sliding-window debounce turns a burst of saves into one notification
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import Counter
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from fnmatch import fnmatch
from pathlib import Path

import structlog
from watchfiles import Change, awatch

from flaketree.core.progress import pluralize

logger = structlog.get_logger()

# Never interesting, and ``result`` symlinks point into the store
IGNORED_DIRS: frozenset[str] = frozenset({".git", ".direnv", "result", "node_modules"})

DEFAULT_WATCH_PATTERNS: tuple[str, ...] = ("flake.nix", "flake.lock", "**/*.nix")
DEBOUNCE_WINDOW_SEC = 0.5
MAX_DEBOUNCE_WAIT_SEC = 2.0


def _is_cross_filesystem(path: Path) -> bool:
    """Detect if path is on a cross-filesystem mount (WSL /mnt/*, network drives, etc.)."""
    path_str = str(path.resolve())
    # Single drive letter only: /mnt/c/ but not /mnt/data/
    if (
        path_str.startswith("/mnt/")
        and len(path_str) > 6
        and path_str[5].isalpha()
        and path_str[6] == "/"
    ):
        return True
    return path_str.startswith(("/run/user/", "/media/", "/net/"))


def matches_patterns(rel_path: Path, patterns: Sequence[str]) -> bool:
    """Glob-match a flake-relative path. ``**/`` also matches zero directories."""
    if IGNORED_DIRS.intersection(rel_path.parts):
        return False
    text = rel_path.as_posix()
    for pattern in patterns:
        if fnmatch(text, pattern):
            return True
        if pattern.startswith("**/") and fnmatch(text, pattern[3:]):
            return True
    return False


def _summarize_changes(paths: Sequence[Path]) -> str:
    """Human-readable summary like ``"1 lock file, 3 nix files"``."""
    counts: Counter[str] = Counter()
    for p in paths:
        suffix = p.suffix.lstrip(".").lower()
        counts[suffix or "other"] += 1
    return ", ".join(pluralize(count, f"{kind} file") for kind, count in counts.most_common())


@dataclass
class FileWatcher:
    """Async flake watcher with sliding-window debouncing.

    ``on_change`` is called with no arguments once changes have settled:
    after ``debounce_window`` seconds without further changes, or at the
    latest ``max_debounce_wait`` seconds after the first one.
    """

    flake_dir: Path
    on_change: Callable[[], None]
    patterns: Sequence[str] = DEFAULT_WATCH_PATTERNS
    poll_interval: float = 1.0  # Seconds between polls (cross-filesystem)
    debounce_window: float = DEBOUNCE_WINDOW_SEC
    max_debounce_wait: float = MAX_DEBOUNCE_WAIT_SEC

    _watch_task: asyncio.Task[None] | None = field(default=None, init=False)
    _debounce_task: asyncio.Task[None] | None = field(default=None, init=False)
    _stop_event: asyncio.Event = field(default_factory=asyncio.Event, init=False)
    _is_cross_fs: bool = field(init=False)
    _pending_changes: set[Path] = field(default_factory=set, init=False)
    _last_change_time: float = field(default=0.0, init=False)
    _first_change_time: float = field(default=0.0, init=False)

    def __post_init__(self) -> None:
        self._is_cross_fs = _is_cross_filesystem(self.flake_dir)

    @property
    def running(self) -> bool:
        return self._watch_task is not None and not self._watch_task.done()

    async def start(self) -> None:
        """Start watching for flake source changes."""
        if self._watch_task is not None:
            return

        self._stop_event.clear()
        self._watch_task = asyncio.create_task(self._watch_loop(), name="flake-watcher")
        self._debounce_task = asyncio.create_task(
            self._debounce_flush_loop(), name="flake-watcher-debounce"
        )
        logger.info(
            "file_watcher_started",
            flake_dir=str(self.flake_dir),
            mode="polling" if self._is_cross_fs else "native",
            patterns=list(self.patterns),
            debounce_window=self.debounce_window,
        )

    async def stop(self) -> None:
        """Stop watching. Pending changes are dropped, not flushed."""
        self._stop_event.set()

        for task in (self._debounce_task, self._watch_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._debounce_task = None
        self._watch_task = None
        self._pending_changes.clear()

        logger.info("file_watcher_stopped")

    def _watch_filter(self, change: Change, path: str) -> bool:
        try:
            rel_path = Path(path).relative_to(self.flake_dir)
        except ValueError:
            return False
        return matches_patterns(rel_path, self.patterns)

    def _queue_change(self, path: Path) -> None:
        """Queue a change for debounced delivery."""
        now = time.monotonic()
        if not self._pending_changes:
            self._first_change_time = now
        self._pending_changes.add(path)
        self._last_change_time = now

    def _should_flush(self) -> bool:
        if not self._pending_changes:
            return False
        now = time.monotonic()
        # Quiet window elapsed or max wait exceeded
        return (
            now - self._last_change_time >= self.debounce_window
            or now - self._first_change_time >= self.max_debounce_wait
        )

    def _flush_pending(self) -> None:
        if not self._pending_changes:
            return

        paths = sorted(self._pending_changes)
        self._pending_changes.clear()
        self._first_change_time = 0.0
        self._last_change_time = 0.0

        logger.info("changes_detected", count=len(paths), summary=_summarize_changes(paths))
        try:
            self.on_change()
        except Exception as e:
            logger.error("change_callback_failed", error=str(e))

    async def _debounce_flush_loop(self) -> None:
        """Background task that flushes when the debounce window elapses."""
        while not self._stop_event.is_set():
            await asyncio.sleep(0.1)
            if self._should_flush():
                self._flush_pending()

    async def _watch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                async for changes in awatch(
                    self.flake_dir,
                    watch_filter=self._watch_filter,
                    stop_event=self._stop_event,
                    force_polling=self._is_cross_fs,
                    poll_delay_ms=int(self.poll_interval * 1000),
                    ignore_permission_denied=True,
                ):
                    self._handle_changes(changes)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self._stop_event.is_set():
                    return
                logger.error("watcher_error", error=str(e))
                # Brief backoff before retry
                await asyncio.sleep(1.0)

    def _handle_changes(self, changes: set[tuple[Change, str]]) -> None:
        for change_type, path_str in changes:
            rel_path = Path(path_str).relative_to(self.flake_dir)
            self._queue_change(rel_path)
            logger.debug("path_queued", path=str(rel_path), change_type=change_type.name)
