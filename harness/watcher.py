"""Filesystem watcher feeding the debouncer.

watchfiles does the OS-level observation; we only keep BrightScript sources
and the manifest, skip the build output directory in compile mode, and let
the debouncer decide when a burst is over.
"""
from __future__ import annotations

import asyncio
import contextlib
import fnmatch
from pathlib import Path
from typing import Any, Optional, Sequence

import structlog
from watchfiles import Change, DefaultFilter, awatch

from .bootstrap import WATCH_TRIGGERS_TOTAL, Settings
from .debouncer import WatchDebouncer
from .models import BroadcastMessage, MessageKind, Trigger

logger = structlog.get_logger(__name__)

_CHANGE_NAMES = {
    Change.added: "add",
    Change.modified: "change",
    Change.deleted: "unlink",
}


class SourceFilter(DefaultFilter):
    """Accept only files matching the watch patterns, outside ignored paths."""

    def __init__(self, patterns: Sequence[str], ignore_paths: Sequence[Path] = ()):
        self.patterns = list(patterns)
        # Matched by path component, not string prefix: out/ must not hide outline.brs
        self.ignored_trees = [Path(p) for p in ignore_paths]
        super().__init__()

    def __call__(self, change: Change, path: str) -> bool:
        if not super().__call__(change, path):
            return False
        candidate = Path(path)
        if any(candidate.is_relative_to(tree) for tree in self.ignored_trees):
            return False
        return any(fnmatch.fnmatch(candidate.name, pattern) for pattern in self.patterns)


class SourceWatcher:
    def __init__(self, settings: Settings, broadcaster: Any, coordinator: Any):
        self.settings = settings
        self.broadcaster = broadcaster
        self.coordinator = coordinator
        self.debouncer = WatchDebouncer(settings.debounce_ms / 1000.0, self._on_quiet)
        # Build outputs only exist in compile mode
        ignored = [settings.output_dir] if settings.build_mode == "compile" else []
        self.filter = SourceFilter(settings.watch_patterns, ignore_paths=ignored)
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._notices: set[asyncio.Task] = set()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.is_running:
            return
        root = self.settings.project_root
        if not root.is_dir():
            logger.warning("watch_root_missing", path=str(root))
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._watch(root), name="source_watcher")
        logger.info("watch_started", path=str(root), patterns=self.settings.watch_patterns)

    async def stop(self) -> None:
        self._stop.set()
        self.debouncer.cancel()
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("watch_stopped")

    async def _watch(self, root: Path) -> None:
        # watchfiles' own grouping stays short; the debouncer owns the quiet window
        async for changes in awatch(root, watch_filter=self.filter, stop_event=self._stop, debounce=50, step=10):
            for change, path in changes:
                self.debouncer.notify(path, _CHANGE_NAMES.get(change, "change"))

    def _on_quiet(self, changes: list[tuple[str, str]]) -> None:
        WATCH_TRIGGERS_TOTAL.inc()
        paths = [path for _, path in changes]
        logger.info("watch_triggered", files=len(paths))
        if len(changes) == 1:
            kind, path = changes[0]
            text = f"🔁 Detected {kind} on {path}, restarting BrightScript..."
        else:
            text = f"🔁 Detected {len(changes)} changes ({', '.join(Path(p).name for p in paths)}), restarting BrightScript..."
        notice = asyncio.get_running_loop().create_task(
            self.broadcaster.publish(BroadcastMessage(MessageKind.INFO, text, "watch"))
        )
        self._notices.add(notice)
        notice.add_done_callback(self._notices.discard)
        self.coordinator.request_build(Trigger.WATCH, paths)
