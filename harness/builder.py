"""Build coordination: one build at a time, coalesced re-runs.

request_build() never blocks. The first request starts a driver task; any
request arriving while that build runs is folded into a single pending job
(last request wins). When the in-flight build ends with a pending job queued
its result is stale, so it is discarded and the pending job runs next.
A successful, still-current build hands its artifacts to the supervisor and
waits for the restart before the driver looks at the next job.
"""
from __future__ import annotations

import asyncio
import fnmatch
import shlex
import time
from pathlib import Path
from typing import Any, Iterable, Optional, Protocol

import structlog

from .bootstrap import BUILD_DURATION_SECONDS, BUILDS_TOTAL, Settings
from .errors import BuildExitError, EmptyBuildOutput, HarnessError, ToolInvocationError
from .models import BroadcastMessage, BuildJob, BuildStatus, MessageKind, Trigger

logger = structlog.get_logger(__name__)


class BuildStrategy(Protocol):
    async def build(self) -> list[Path]:
        """Produce the runnable artifact paths (never empty) or raise a HarnessError."""
        ...


def render_command(template: str, settings: Settings) -> list[str]:
    values = {
        "project_root": str(settings.project_root),
        "output_dir": str(settings.output_dir),
        "file": str(settings.target_file),
    }
    return [token.format(**values) for token in shlex.split(template)]


def filter_artifacts(paths: Iterable[Path], exclude: Iterable[str]) -> list[Path]:
    """Drop helper/library artifacts; only entry points are runnable."""
    markers = [m.lower() for m in exclude]
    return [p for p in paths if not any(m in p.name.lower() for m in markers)]


async def run_tool(argv: list[str], cwd: Path, timeout: float) -> tuple[int, str, str]:
    """Run a build tool to completion. Returns (returncode, stdout, stderr)."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd),
        )
    except OSError as exc:
        raise ToolInvocationError(argv, exc.strerror or str(exc)) from exc
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ToolInvocationError(argv, f"timed out after {timeout:g}s")
    return (
        proc.returncode if proc.returncode is not None else -1,
        out.decode("utf-8", errors="replace"),
        err.decode("utf-8", errors="replace"),
    )


def _diagnostics(stdout: str, stderr: str) -> str:
    return "\n".join(part.rstrip() for part in (stderr, stdout) if part.strip())


class InterpretStrategy:
    """Run the target script directly; the optional validator acts as the build."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def build(self) -> list[Path]:
        target = self.settings.target_file
        if not target.is_file():
            raise EmptyBuildOutput(str(target), f"BRS file not found: {target}")
        if self.settings.validate_command:
            argv = render_command(self.settings.validate_command, self.settings)
            code, out, err = await run_tool(argv, self.settings.project_root, self.settings.build_timeout_seconds)
            if code != 0:
                raise BuildExitError(code, _diagnostics(out, err))
        return [target]


class CompileStrategy:
    """Run BUILD_COMMAND, then collect ARTIFACT_PATTERN matches from the output dir.

    Helper outputs matching ARTIFACT_EXCLUDE are dropped here; interpret mode
    never filters its target.
    """

    def __init__(self, settings: Settings):
        self.settings = settings

    async def build(self) -> list[Path]:
        if not self.settings.build_command:
            raise ToolInvocationError("BUILD_COMMAND", "not configured (required by BUILD_MODE=compile)")
        argv = render_command(self.settings.build_command, self.settings)
        code, out, err = await run_tool(argv, self.settings.project_root, self.settings.build_timeout_seconds)
        if code != 0:
            raise BuildExitError(code, _diagnostics(out, err))
        out_dir = self.settings.output_dir
        produced: list[Path] = []
        if out_dir.is_dir():
            produced = sorted(
                p for p in out_dir.rglob("*")
                if p.is_file() and fnmatch.fnmatch(p.name, self.settings.artifact_pattern)
            )
        artifacts = filter_artifacts(produced, self.settings.artifact_exclude)
        if not artifacts:
            raise EmptyBuildOutput(str(out_dir))
        return artifacts


def make_strategy(settings: Settings) -> BuildStrategy:
    if settings.build_mode == "compile":
        return CompileStrategy(settings)
    return InterpretStrategy(settings)


class BuildCoordinator:
    def __init__(
        self,
        settings: Settings,
        broadcaster: Any,
        supervisor: Any,
        strategy: Optional[BuildStrategy] = None,
    ):
        self.settings = settings
        self.broadcaster = broadcaster
        self.supervisor = supervisor
        self.strategy = strategy or make_strategy(settings)
        self.last_artifacts: list[Path] = []
        self.last_job: Optional[BuildJob] = None
        self._pending: Optional[BuildJob] = None
        self._current: Optional[BuildJob] = None
        self._driver: Optional[asyncio.Task] = None

    @property
    def building(self) -> bool:
        return self._current is not None

    def request_build(self, trigger: Trigger, changed: Iterable[str] = ()) -> BuildJob:
        """Ask for a build; returns the job that will satisfy the request."""
        changed = list(changed)
        if self._driver is not None and not self._driver.done():
            if self._pending is None:
                self._pending = BuildJob(trigger=trigger)
            pending = self._pending
            pending.trigger = trigger
            pending.changed.extend(p for p in changed if p not in pending.changed)
            logger.info("build_coalesced", job=pending.id, trigger=trigger.value)
            return pending
        job = BuildJob(trigger=trigger, changed=changed)
        self._driver = asyncio.create_task(self._drive(job), name="build_driver")
        return job

    async def wait_idle(self) -> None:
        """Wait until no build is running or pending (tests, shutdown)."""
        while self._driver is not None and not self._driver.done():
            await asyncio.shield(self._driver)

    async def _drive(self, job: BuildJob) -> None:
        next_job: Optional[BuildJob] = job
        while next_job is not None:
            self._current = next_job
            try:
                await self._run(next_job)
            except Exception as exc:  # pragma: no cover
                logger.error("build_driver_error", job=next_job.id, error=str(exc))
            finally:
                self._current = None
                next_job.complete()
            next_job, self._pending = self._pending, None

    async def _run(self, job: BuildJob) -> None:
        source = f"build:{job.id}"
        job.mark_running()
        logger.info("build_started", job=job.id, trigger=job.trigger.value, mode=self.settings.build_mode)
        await self._publish(MessageKind.INFO, f"🔨 Building ({job.trigger.value}, {self.settings.build_mode})", source)
        t0 = time.perf_counter()
        try:
            artifacts = await self.strategy.build()
        except HarnessError as exc:
            job.mark_failed(exc.report(), exc.kind)
        except Exception as exc:  # pragma: no cover - unexpected, keep the driver alive
            logger.exception("build_crashed", job=job.id)
            job.mark_failed(f"unexpected build error: {exc}", "internal")
        else:
            job.mark_succeeded(artifacts)
        finally:
            BUILD_DURATION_SECONDS.observe(time.perf_counter() - t0)

        if self._pending is not None:
            # A newer request arrived while this one ran
            job.superseded = True
            BUILDS_TOTAL.labels(outcome="superseded").inc()
            logger.info("build_superseded", job=job.id, status=job.status.value, next=self._pending.id)
            await self._publish(MessageKind.INFO, "⏭️ Changes arrived during the build, rebuilding...", source)
            self.last_job = job
            return

        self.last_job = job
        if job.status == BuildStatus.FAILED:
            BUILDS_TOTAL.labels(outcome="failed").inc()
            logger.warning("build_failed", job=job.id, kind=job.error_kind, error=job.error)
            await self._publish(MessageKind.BUILD_ERROR, job.error or "build failed", source)
            return

        BUILDS_TOTAL.labels(outcome="succeeded").inc()
        self.last_artifacts = list(job.artifacts)
        logger.info("build_succeeded", job=job.id, artifacts=[str(p) for p in job.artifacts], duration=job.duration_seconds)
        await self.supervisor.restart(job.artifacts)

    async def _publish(self, kind: MessageKind, text: str, source: str) -> None:
        await self.broadcaster.publish(BroadcastMessage(kind, text, source))
