"""Integration tests for the control surface.

The app runs through the synchronous TestClient; the lifespan starts the
supervisor loop, and builds run against throwaway Python scripts standing in
for BrightScript sources.
"""
from __future__ import annotations

import time

import pytest
from starlette.testclient import TestClient

from conftest import PYTHON
from server.main import app


@pytest.fixture
def project(tmp_path, monkeypatch):
    monkeypatch.setenv("PROJECT_PATH", str(tmp_path))
    monkeypatch.setenv("PROJECT", "")
    monkeypatch.setenv("FILE", "main.py")
    monkeypatch.setenv("RUNTIME_COMMAND", PYTHON)
    monkeypatch.setenv("BUILD_MODE", "interpret")
    monkeypatch.setenv("WATCH_ENABLED", "0")
    monkeypatch.setenv("INITIAL_RUN", "0")
    monkeypatch.setenv("STOP_GRACE_SECONDS", "2")
    return tmp_path


@pytest.fixture
def client(project):
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


def _wait_status(client, predicate, timeout: float = 15.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        data = client.get("/status").json()
        if predicate(data):
            return data
        if time.monotonic() > deadline:
            raise AssertionError(f"status never matched: {data}")
        time.sleep(0.05)


def _build_done(data: dict) -> bool:
    last = data.get("last_build")
    return bool(last) and last["status"] in ("succeeded", "failed") and not data["building"]


def test_health_endpoint_ok(project, client):
    (project / "main.py").write_text("print('hi')\n")
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["running"] is False
    assert data["watching"] is False
    assert data["target_exists"] is True
    assert resp.headers.get("X-Request-ID")


def test_status_before_any_build(client, project):
    data = client.get("/status").json()
    assert data["running"] is False
    assert data["last_build"] is None
    assert data["current_artifacts"] == []
    assert data["mode"] == "interpret"
    assert data["file"].endswith("main.py")


def test_restart_runs_the_program_to_completion(project, client):
    (project / "main.py").write_text("print('hello from brs')\n")
    resp = client.post("/restart")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "restarting"
    assert isinstance(body["job"], int)

    data = _wait_status(client, lambda d: _build_done(d) and d["exit_code"] == 0)
    assert data["last_build"]["status"] == "succeeded"
    assert data["last_build"]["trigger"] == "manual"
    assert data["running"] is False
    assert data["state"] == "exited"
    assert data["current_artifacts"][0].endswith("main.py")


def test_restart_accepts_get(project, client):
    (project / "main.py").write_text("print('x')\n")
    assert client.get("/restart").json()["status"] == "restarting"
    _wait_status(client, _build_done)


def test_failed_build_keeps_previous_state(project, client):
    resp = client.post("/restart")
    assert resp.status_code == 200
    data = _wait_status(client, _build_done)
    assert data["last_build"]["status"] == "failed"
    assert data["last_build"]["error_kind"] == "empty-output"
    assert data["current_artifacts"] == []
    assert data["generation"] == 0


def test_compiled_files_lists_current_artifacts(project, client):
    assert client.get("/compiled-files").json() == {}
    source = "print('compiled')\n"
    (project / "main.py").write_text(source)
    client.post("/restart")
    _wait_status(client, lambda d: _build_done(d) and d["exit_code"] is not None)

    assert client.get("/compiled-files").json() == {"main.py": source}

    (project / "main.py").unlink()
    content = client.get("/compiled-files").json()["main.py"]
    assert content.startswith("[error] could not read main.py")


def test_execute_requires_a_build(client):
    resp = client.get("/execute")
    assert resp.status_code == 409
    assert "error" in resp.json()


def test_execute_returns_captured_output(project, client):
    (project / "main.py").write_text("import sys\nprint('answer 42')\nsys.stderr.write('careful\\n')\n")
    client.post("/restart")
    _wait_status(client, lambda d: _build_done(d) and d["exit_code"] is not None)

    resp = client.get("/execute")
    assert resp.status_code == 200
    data = resp.json()
    assert data["exit_code"] == 0
    assert data["stdout"].strip() == "answer 42"
    assert data["stderr"].strip() == "careful"


def test_execute_reports_runtime_failure(project, client):
    (project / "main.py").write_text("import sys\nprint('partial')\nsys.exit(2)\n")
    client.post("/restart")
    _wait_status(client, lambda d: _build_done(d) and d["exit_code"] is not None)

    resp = client.get("/execute")
    assert resp.status_code == 500
    data = resp.json()
    assert data["exit_code"] == 2
    assert data["stdout"].strip() == "partial"
    assert data["error"] == "BRS exited with code 2"


def test_metrics_endpoint(client):
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "harness_builds_total" in resp.text


def test_ui_is_served(client):
    resp = client.get("/")
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert "EventSource" in client.get("/client.js").text


def test_unknown_paths_fall_back_to_the_ui(client):
    resp = client.get("/some/deep/link")
    assert resp.status_code == 200
    assert "text/html" in resp.headers["content-type"]
    assert resp.text == client.get("/").text
    # API routes still win over the fallback
    assert client.get("/status").headers["content-type"].startswith("application/json")
