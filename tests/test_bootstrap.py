from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from entrypoint import apply_overrides, build_parser
from harness.bootstrap import Settings, bootstrap, build_context, get_context


@pytest.mark.asyncio
async def test_bootstrap_basic(tmp_path, monkeypatch):
    monkeypatch.setenv("PROJECT_PATH", str(tmp_path))
    ctx = await bootstrap(force=True)
    assert ctx.settings.app_name
    assert ctx.logger is not None
    assert ctx.watcher is None  # WATCH_ENABLED=0 in tests
    assert await get_context() is ctx


def test_settings_derived_paths(tmp_path):
    s = Settings(project_path=str(tmp_path), project="hello", file="source/main.brs")
    root = (tmp_path / "hello").resolve()
    assert s.project_root == root
    assert s.target_file == root / "source" / "main.brs"
    assert s.output_dir == root / "out"
    assert s.watch_patterns == ["*.brs", "manifest"]
    assert s.artifact_exclude == ["lib"]


def test_settings_parse_lists_and_reject_bad_values():
    s = Settings(watch_patterns_raw=" *.brs ; *.xml ;", artifact_exclude_raw="")
    assert s.watch_patterns == ["*.brs", "*.xml"]
    assert s.artifact_exclude == []
    with pytest.raises(ValidationError):
        Settings(runtime_command="   ")
    with pytest.raises(ValidationError):
        Settings(build_mode="transpile")


@pytest.mark.asyncio
async def test_build_context_honours_watch_flag(make_settings):
    ctx = build_context(make_settings(watch_enabled=True))
    assert ctx.watcher is not None
    assert not ctx.watcher.is_running
    assert ctx.coordinator.supervisor is ctx.supervisor


def test_entrypoint_flags_override_environment(monkeypatch):
    for key in ("PORT", "PROJECT", "BUILD_MODE", "RUNTIME_COMMAND", "WATCH_ENABLED"):
        monkeypatch.setenv(key, "placeholder")
    args = build_parser().parse_args(
        ["--port", "9001", "--project", "demo", "--mode", "compile", "--runtime", "brs --verbose", "--no-watch"]
    )
    apply_overrides(args)
    assert os.environ["PORT"] == "9001"
    assert os.environ["PROJECT"] == "demo"
    assert os.environ["BUILD_MODE"] == "compile"
    assert os.environ["RUNTIME_COMMAND"] == "brs --verbose"
    assert os.environ["WATCH_ENABLED"] == "0"
