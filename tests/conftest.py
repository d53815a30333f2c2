import os
import shlex
import sys
import textwrap

import pytest

# Keep the test environment quiet and passive unless a test opts in
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WATCH_ENABLED", "0")
os.environ.setdefault("INITIAL_RUN", "0")

from harness import bootstrap  # noqa: E402

PYTHON = f"{shlex.quote(sys.executable)} -u"


class RecordingBroadcaster:
    """Stand-in for the broadcaster: keeps every published line in order."""

    def __init__(self):
        self.messages = []

    async def publish(self, message):
        self.messages.extend(message.lines())

    def texts(self, kind=None):
        return [m.text for m in self.messages if kind is None or m.kind == kind]


class FakeSupervisor:
    def __init__(self):
        self.restarts = []

    async def restart(self, artifacts):
        self.restarts.append(list(artifacts))


@pytest.fixture(autouse=True)
def fresh_ctx():
    # Each test gets its own context; nothing leaks through the singleton
    bootstrap.reset_context()
    yield
    bootstrap.reset_context()


@pytest.fixture
def make_settings(tmp_path):
    def _make(**overrides):
        values = dict(
            project_path=str(tmp_path),
            project="",
            file="main.py",
            runtime_command=PYTHON,
            stop_grace_seconds=2.0,
            debounce_ms=50,
            watch_enabled=False,
            initial_run=False,
        )
        values.update(overrides)
        return bootstrap.Settings(**values)

    return _make


@pytest.fixture
def write_script(tmp_path):
    def _write(name, body):
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(body), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def recorder():
    return RecordingBroadcaster()


@pytest.fixture
def fake_supervisor():
    return FakeSupervisor()
