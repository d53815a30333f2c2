"""Change debouncing for rapid edits."""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


class WatchDebouncer:
    """
    Collapse a burst of change notifications into one trigger.

    Every notification resets a single timer owned by the debouncer; the
    callback runs once, with the deduplicated paths, after a quiet window.
    """

    def __init__(
        self,
        window_seconds: float,
        on_trigger: Callable[[list[tuple[str, str]]], None],
    ):
        """
        Args:
            window_seconds: Quiet period required before firing
            on_trigger: Called with (kind, path) pairs, oldest first
        """
        self.window_seconds = window_seconds
        self.on_trigger = on_trigger
        self._pending: dict[str, str] = {}
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def notify(self, path: str, kind: str = "modified") -> None:
        """Record a change and restart the quiet window. Must run on the loop."""
        self._pending.pop(path, None)
        self._pending[path] = kind
        if self._timer is not None:
            self._timer.cancel()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.window_seconds, self._flush)

    def _flush(self) -> None:
        self._timer = None
        if not self._pending:
            return
        changes = [(kind, path) for path, kind in self._pending.items()]
        self._pending.clear()
        try:
            self.on_trigger(changes)
        except Exception:
            logger.exception("debounce_callback_failed", changes=len(changes))

    def cancel(self) -> None:
        """Cancel pending flush."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
