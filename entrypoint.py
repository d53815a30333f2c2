"""Unified launcher entrypoint.

Behavior:
 - Settings come from the environment / .env (see harness.bootstrap.Settings).
 - Command-line flags override the matching environment variables.
 - Starts the FastAPI server; the lifespan starts watcher, supervisor and the first build.

Usage (source):
  python entrypoint.py --project-path ./projects --project hello --file source/main.brs
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# flag -> environment variable read by Settings
_OVERRIDES = {
    "host": "APP_HOST",
    "port": "PORT",
    "project_path": "PROJECT_PATH",
    "project": "PROJECT",
    "file": "FILE",
    "mode": "BUILD_MODE",
    "runtime": "RUNTIME_COMMAND",
    "log_level": "LOG_LEVEL",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Live-reload harness for BrightScript projects")
    parser.add_argument("--host", help="Bind address (APP_HOST)")
    parser.add_argument("--port", type=int, help="Listening port (PORT)")
    parser.add_argument("--project-path", help="Directory holding the projects (PROJECT_PATH)")
    parser.add_argument("--project", help="Project directory name (PROJECT)")
    parser.add_argument("--file", help="Entry script relative to the project (FILE)")
    parser.add_argument("--mode", choices=("interpret", "compile"), help="Build pipeline (BUILD_MODE)")
    parser.add_argument("--runtime", help="Interpreter command (RUNTIME_COMMAND)")
    parser.add_argument("--log-level", help="Log level (LOG_LEVEL)")
    parser.add_argument("--no-watch", action="store_true", help="Disable file watching")
    return parser


def apply_overrides(args: argparse.Namespace) -> None:
    for attr, env in _OVERRIDES.items():
        value = getattr(args, attr, None)
        if value is not None:
            os.environ[env] = str(value)
    if args.no_watch:
        os.environ["WATCH_ENABLED"] = "0"


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    apply_overrides(args)

    import uvicorn
    from harness.bootstrap import Settings

    settings = Settings()
    try:
        uvicorn.run(
            "server.main:app",
            host=settings.app_host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        print("\n[entrypoint] shutdown requested (KeyboardInterrupt)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
