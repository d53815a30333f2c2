"""Failure taxonomy for the build/run pipeline.

None of these ever propagate out of the coordinator or the supervisor: they
are caught at the component boundary, counted, logged and turned into a
broadcast line so the viewer sees what went wrong.
"""
from __future__ import annotations

from typing import Optional


class HarnessError(Exception):
    """Base class for pipeline failures."""

    kind = "error"

    def report(self) -> str:
        return str(self)


class ToolInvocationError(HarnessError):
    """The build or runtime tool could not be launched (or never finished)."""

    kind = "tool-invocation"

    def __init__(self, command: list[str] | str, reason: str):
        self.command = command if isinstance(command, str) else " ".join(command)
        self.reason = reason
        super().__init__(f"could not run `{self.command}`: {reason}")


class BuildFailure(HarnessError):
    """The build tool ran but did not yield a runnable artifact set."""

    kind = "build"


class BuildExitError(BuildFailure):
    kind = "build-exit"

    def __init__(self, returncode: int, output: str):
        self.returncode = returncode
        self.output = output.rstrip()
        super().__init__(f"build failed with exit code {returncode}")

    def report(self) -> str:
        if not self.output:
            return str(self)
        return f"{self}:\n{self.output}"


class EmptyBuildOutput(BuildFailure):
    kind = "empty-output"

    def __init__(self, location: str, detail: Optional[str] = None):
        self.location = location
        super().__init__(detail or f"build produced no runnable artifacts in {location}")


class RuntimeCrash(HarnessError):
    """The supervised process exited non-zero without being asked to stop."""

    kind = "runtime-crash"

    def __init__(self, returncode: int):
        self.returncode = returncode
        super().__init__(f"BRS crashed with code {returncode}")
