from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class Trigger(str, Enum):
    WATCH = "watch"
    MANUAL = "manual"
    STARTUP = "startup"  # initial run when the server boots


class BuildStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RuntimeState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"


class MessageKind(str, Enum):
    INFO = "info"
    BUILD_ERROR = "build-error"
    RUNTIME_OUTPUT = "runtime-output"
    RUNTIME_ERROR = "runtime-error"
    LIFECYCLE = "lifecycle"

    @property
    def prefix(self) -> str:
        return _PREFIXES.get(self, "")


_PREFIXES = {
    MessageKind.RUNTIME_OUTPUT: "[BRS] ",
    MessageKind.RUNTIME_ERROR: "[BRS Error] ",
    MessageKind.BUILD_ERROR: "[BUILD ERROR] ",
}

_job_ids = itertools.count(1)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class BroadcastMessage:
    """One immutable line (or block) of text bound for every viewer."""

    kind: MessageKind
    text: str
    source: Optional[str] = None  # e.g. "build:3" or "runtime:2"

    def lines(self) -> list["BroadcastMessage"]:
        parts = self.text.splitlines() or [""]
        if len(parts) == 1 and parts[0] == self.text:
            return [self]
        return [BroadcastMessage(self.kind, part, self.source) for part in parts]

    def render(self) -> str:
        return f"{self.kind.prefix}{self.text}"


@dataclass(slots=True)
class BuildJob:
    """A single build attempt and its outcome."""

    trigger: Trigger
    id: int = field(default_factory=lambda: next(_job_ids))
    status: BuildStatus = BuildStatus.PENDING
    artifacts: list[Path] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None
    changed: list[str] = field(default_factory=list)
    superseded: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def finished(self) -> bool:
        return self.status in (BuildStatus.SUCCEEDED, BuildStatus.FAILED)

    @property
    def duration_seconds(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return max(0.0, (self.finished_at - self.started_at).total_seconds())

    def mark_running(self) -> None:
        self.status = BuildStatus.RUNNING
        self.started_at = _utcnow()

    def mark_succeeded(self, artifacts: list[Path]) -> None:
        self.status = BuildStatus.SUCCEEDED
        self.artifacts = list(artifacts)
        self.finished_at = _utcnow()

    def mark_failed(self, error: str, kind: str) -> None:
        self.status = BuildStatus.FAILED
        self.error = error
        self.error_kind = kind
        self.finished_at = _utcnow()

    def complete(self) -> None:
        self._done.set()

    async def wait(self) -> "BuildJob":
        await self._done.wait()
        return self

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "trigger": self.trigger.value,
            "status": self.status.value,
            "artifacts": [str(p) for p in self.artifacts],
            "error": self.error,
            "error_kind": self.error_kind,
            "superseded": self.superseded,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass(slots=True)
class RuntimeProcess:
    """The interpreter invocation currently owned by the supervisor."""

    handle: Any  # asyncio.subprocess.Process
    artifacts: list[Path]
    generation: int
    state: RuntimeState = RuntimeState.STARTING
    exit_code: Optional[int] = None
    stop_requested: bool = False
    started_at: datetime = field(default_factory=_utcnow)

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.handle, "pid", None)

    @property
    def alive(self) -> bool:
        return self.state != RuntimeState.EXITED


@dataclass(slots=True)
class ExecutionResult:
    """Captured output of a synchronous runtime invocation."""

    exit_code: int
    stdout: str
    stderr: str
    duration_seconds: float

    @property
    def ok(self) -> bool:
        return self.exit_code == 0
