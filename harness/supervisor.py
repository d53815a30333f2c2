"""Supervision of the single BrightScript runtime process.

All lifecycle changes go through one command queue drained by one task, so
the "current process" reference is only ever touched from that task:

  restart(artifacts) -> terminate + await the old process (its exit line is
                        broadcast) -> spawn the new one -> start its pumps
  stop()             -> terminate + await, no-op when nothing runs

Each output stream gets its own pump task reading line by line until EOF.
A watcher task per process waits for the exit, drains the pumps and
broadcasts exactly one lifecycle line with the exit code.
"""
from __future__ import annotations

import asyncio
import contextlib
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Sequence

import structlog

from .bootstrap import RUNTIME_EXITS_TOTAL, RUNTIME_STARTS_TOTAL, Settings
from .errors import RuntimeCrash, ToolInvocationError
from .models import BroadcastMessage, ExecutionResult, MessageKind, RuntimeProcess, RuntimeState

logger = structlog.get_logger(__name__)


def runtime_argv(settings: Settings, artifacts: Sequence[Path]) -> list[str]:
    return shlex.split(settings.runtime_command) + [str(p) for p in artifacts]


@dataclass(slots=True)
class _Command:
    action: str  # "restart" | "stop"
    artifacts: list[Path] = field(default_factory=list)
    done: asyncio.Future = field(default_factory=lambda: asyncio.get_running_loop().create_future())


class ProcessSupervisor:
    def __init__(self, settings: Settings, broadcaster: Any):
        self.settings = settings
        self.broadcaster = broadcaster
        self._commands: asyncio.Queue[_Command] = asyncio.Queue()
        self._current: Optional[RuntimeProcess] = None
        self._exit_task: Optional[asyncio.Task] = None
        self._pumps: list[asyncio.Task] = []
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------
    @property
    def current(self) -> Optional[RuntimeProcess]:
        return self._current

    @property
    def running(self) -> bool:
        proc = self._current
        return proc is not None and proc.state == RuntimeState.RUNNING

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="runtime_supervisor")

    async def close(self) -> None:
        """Stop the runtime process and the command loop (server shutdown)."""
        if self._task is None:
            return
        await self.stop()
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def restart(self, artifacts: Sequence[Path]) -> None:
        await self._submit(_Command("restart", list(artifacts)))

    async def stop(self) -> None:
        await self._submit(_Command("stop"))

    def status(self) -> dict[str, Any]:
        proc = self._current
        return {
            "running": self.running,
            "state": proc.state.value if proc else None,
            "pid": proc.pid if proc and proc.alive else None,
            "generation": self._generation,
            "artifacts": [str(p) for p in proc.artifacts] if proc else [],
            "exit_code": proc.exit_code if proc else None,
        }

    # ------------------------------------------------------------
    # Command loop
    # ------------------------------------------------------------
    async def _submit(self, cmd: _Command) -> None:
        self.start()
        await self._commands.put(cmd)
        await asyncio.shield(cmd.done)

    async def _run(self) -> None:
        while True:
            cmd = await self._commands.get()
            try:
                await self._terminate_current()
                if cmd.action == "restart":
                    await self._spawn(cmd.artifacts)
            except Exception as exc:  # pragma: no cover - keeps the loop alive
                logger.error("supervisor_command_failed", action=cmd.action, error=str(exc))
                await self._publish(MessageKind.RUNTIME_ERROR, f"supervisor error: {exc}")
            finally:
                if not cmd.done.done():
                    cmd.done.set_result(None)

    async def _spawn(self, artifacts: list[Path]) -> None:
        argv = runtime_argv(self.settings, artifacts)
        self._generation += 1
        generation = self._generation
        source = f"runtime:{generation}"
        await self._publish(
            MessageKind.LIFECYCLE,
            f"🔁 Starting BrightScript: {' '.join(str(p) for p in artifacts)}",
            source,
        )
        try:
            handle = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.settings.project_root),
                limit=self.settings.stream_line_limit,
            )
        except OSError as exc:
            err = ToolInvocationError(argv, exc.strerror or str(exc))
            logger.error("runtime_spawn_failed", command=argv, error=str(exc))
            await self._publish(MessageKind.RUNTIME_ERROR, err.report(), source)
            return

        proc = RuntimeProcess(handle=handle, artifacts=list(artifacts), generation=generation)
        self._current = proc
        self._pumps = [
            asyncio.create_task(self._pump(handle.stdout, MessageKind.RUNTIME_OUTPUT, source)),
            asyncio.create_task(self._pump(handle.stderr, MessageKind.RUNTIME_ERROR, source)),
        ]
        self._exit_task = asyncio.create_task(self._watch_exit(proc, self._pumps))
        proc.state = RuntimeState.RUNNING
        RUNTIME_STARTS_TOTAL.inc()
        logger.info("runtime_started", pid=proc.pid, generation=generation, command=argv)

    async def _pump(self, stream: asyncio.StreamReader, kind: MessageKind, source: str) -> None:
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # The reader discards a line longer than its limit
                await self._publish(kind, f"<line over {self.settings.stream_line_limit} bytes dropped>", source)
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            message = BroadcastMessage(kind, line, source)
            # Console echo of the program output, as seen by the viewers
            logger.info("runtime_output", text=message.render(), source=source)
            await self.broadcaster.publish(message)

    async def _watch_exit(self, proc: RuntimeProcess, pumps: list[asyncio.Task]) -> None:
        code = await proc.handle.wait()
        # Drain what is left in the pipes; a grandchild holding them open must not stall us
        _, stuck = await asyncio.wait(pumps, timeout=self.settings.stop_grace_seconds)
        for task in stuck:
            task.cancel()
        proc.exit_code = code
        proc.state = RuntimeState.EXITED
        source = f"runtime:{proc.generation}"
        if proc.stop_requested:
            reason = "stopped"
            text = f"🛑 BRS stopped (exit code {code})"
        elif code != 0:
            reason = "crashed"
            text = f"💥 {RuntimeCrash(code)}"
        else:
            reason = "exited"
            text = f"🛑 BRS exited with code {code}"
        RUNTIME_EXITS_TOTAL.labels(reason=reason).inc()
        logger.info("runtime_exited", pid=proc.pid, generation=proc.generation, code=code, reason=reason)
        await self._publish(MessageKind.LIFECYCLE, text, source)

    async def _terminate_current(self) -> None:
        proc, exit_task = self._current, self._exit_task
        if proc is None or exit_task is None:
            return
        grace = self.settings.stop_grace_seconds
        if proc.state != RuntimeState.EXITED and proc.handle.returncode is None:
            proc.stop_requested = True
            with contextlib.suppress(ProcessLookupError):
                proc.handle.terminate()
            try:
                await asyncio.wait_for(asyncio.shield(exit_task), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning("runtime_kill_after_grace", pid=proc.pid, grace=grace)
                with contextlib.suppress(ProcessLookupError):
                    proc.handle.kill()
        # Exit line must be out before anything from the next generation
        await exit_task
        self._exit_task = None
        self._pumps = []

    async def _publish(self, kind: MessageKind, text: str, source: Optional[str] = None) -> None:
        await self.broadcaster.publish(BroadcastMessage(kind, text, source))


async def execute_once(settings: Settings, artifacts: Sequence[Path]) -> ExecutionResult:
    """Run the runtime tool to completion and capture its output.

    Raises ToolInvocationError when the binary cannot start or the run
    exceeds EXECUTE_TIMEOUT_SECONDS.
    """
    argv = runtime_argv(settings, artifacts)
    t0 = time.perf_counter()
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(settings.project_root),
        )
    except OSError as exc:
        raise ToolInvocationError(argv, exc.strerror or str(exc)) from exc
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=settings.execute_timeout_seconds)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise ToolInvocationError(argv, f"timed out after {settings.execute_timeout_seconds:g}s")
    return ExecutionResult(
        exit_code=proc.returncode if proc.returncode is not None else -1,
        stdout=out.decode("utf-8", errors="replace"),
        stderr=err.decode("utf-8", errors="replace"),
        duration_seconds=time.perf_counter() - t0,
    )
