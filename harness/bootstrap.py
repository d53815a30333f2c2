"""Bootstrap module for the live-reload harness.

Central responsibilities:
- Load and validate settings from environment (.env supported by Settings class)
- Configure structured logging (structlog + rotating handlers)
- Expose Prometheus metric instruments (counters, histograms)
- Assemble the shared context (broadcaster, supervisor, coordinator, watcher)

Design notes:
- Components are only wired here; starting the background tasks is the job of
  the server lifespan so tests can build a context without side effects
- Ensure idempotent initialization (bootstrap() returns the singleton unless forced)
"""
from __future__ import annotations

from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Literal, Optional, TYPE_CHECKING
import asyncio
import logging
import sys
import time

import structlog
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from prometheus_client import Counter, Gauge, Histogram

if TYPE_CHECKING:  # pragma: no cover
    from server.events import Broadcaster
    from .builder import BuildCoordinator
    from .supervisor import ProcessSupervisor
    from .watcher import SourceWatcher

# ------------------------------------------------------------
# Settings
# ------------------------------------------------------------

class Settings(BaseSettings):
    """Application settings loaded from environment.

    Uses Pydantic BaseSettings to automatically read from env vars.
    Provide defaults that are safe for local development.
    """

    app_name: str = Field("brs-live", alias="APP_NAME")
    log_level: str = Field("INFO", alias="LOG_LEVEL")
    log_file: str | None = Field(None, alias="LOG_FILE")
    log_max_bytes: int = Field(2_000_000, alias="LOG_MAX_BYTES")  # ~2MB
    log_backup_count: int = Field(5, alias="LOG_BACKUP_COUNT")
    quiet_startup: bool = Field(False, alias="QUIET_STARTUP")

    # Project location (PROJECT_PATH/PROJECT/FILE is the script the interpreter runs)
    project_path: str = Field(".", alias="PROJECT_PATH")
    project: str = Field("", alias="PROJECT")
    file: str = Field("source/main.brs", alias="FILE")

    # HTTP bind
    app_host: str = Field("0.0.0.0", alias="APP_HOST")
    port: int = Field(8000, alias="PORT")

    # Build pipeline: "interpret" hands the target script straight to the
    # runtime, "compile" runs BUILD_COMMAND and collects its output files.
    build_mode: Literal["interpret", "compile"] = Field("interpret", alias="BUILD_MODE")
    runtime_command: str = Field("brs", alias="RUNTIME_COMMAND")
    validate_command: str | None = Field(None, alias="VALIDATE_COMMAND")
    build_command: str | None = Field(None, alias="BUILD_COMMAND")
    build_output_dir: str = Field("out", alias="BUILD_OUTPUT_DIR")  # relative to project root
    artifact_pattern: str = Field("*.brs", alias="ARTIFACT_PATTERN")
    # Semicolon-separated substrings; matching artifact names are helpers, not entry points
    artifact_exclude_raw: str = Field("lib", alias="ARTIFACT_EXCLUDE")

    # Watching
    watch_enabled: bool = Field(True, alias="WATCH_ENABLED")
    watch_patterns_raw: str = Field("*.brs;manifest", alias="WATCH_PATTERNS")
    debounce_ms: int = Field(300, alias="DEBOUNCE_MS")

    # Timeouts
    build_timeout_seconds: float = Field(120.0, alias="BUILD_TIMEOUT_SECONDS")
    stop_grace_seconds: float = Field(3.0, alias="STOP_GRACE_SECONDS")
    execute_timeout_seconds: float = Field(60.0, alias="EXECUTE_TIMEOUT_SECONDS")

    # Streaming
    subscriber_queue_size: int = Field(1000, alias="SUBSCRIBER_QUEUE_SIZE")
    stream_line_limit: int = Field(1_048_576, alias="STREAM_LINE_LIMIT")  # bytes per line

    # Run the pipeline once when the server boots
    initial_run: bool = Field(True, alias="INITIAL_RUN")

    @field_validator("runtime_command")
    @classmethod
    def _require_runtime(cls, v: str) -> str:  # noqa: D401
        if not v.strip():
            raise ValueError("RUNTIME_COMMAND must not be empty")
        return v.strip()

    @property
    def project_root(self) -> Path:
        return (Path(self.project_path) / self.project).resolve()

    @property
    def target_file(self) -> Path:
        return self.project_root / self.file

    @property
    def output_dir(self) -> Path:
        return self.project_root / self.build_output_dir

    @property
    def watch_patterns(self) -> list[str]:
        return [p.strip() for p in self.watch_patterns_raw.split(";") if p.strip()]

    @property
    def artifact_exclude(self) -> list[str]:
        return [p.strip() for p in (self.artifact_exclude_raw or "").split(";") if p.strip()]

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
        populate_by_name=True,
    )


# ------------------------------------------------------------
# Logging configuration (structlog)
# ------------------------------------------------------------

def configure_logging(level: str = "INFO", settings: Settings | None = None) -> None:
    """Configure structured logging with structlog.

    Uses a standard logging handler + structlog processors for JSON output,
    plus a size-rotated file when LOG_FILE is set.
    """
    timestamper = structlog.processors.TimeStamper(fmt="iso", utc=True)

    def add_request_id(logger, method_name, event_dict):  # noqa: D401
        rid = structlog.contextvars.get_contextvars().get("request_id")
        if rid:
            event_dict["request_id"] = rid
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            timestamper,
            add_request_id,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper(), logging.INFO)),
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = []
    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(logging.Formatter("%(message)s"))
    handlers.append(stream_handler)

    if settings and settings.log_file:
        try:
            log_path = Path(settings.log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = RotatingFileHandler(
                settings.log_file,
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
                encoding="utf-8",
            )
            file_handler.setFormatter(logging.Formatter("%(message)s"))
            handlers.append(file_handler)
        except OSError as e:  # pragma: no cover
            print(f"Failed to set file handler: {e}", file=sys.stderr)

    root = logging.getLogger()
    root.handlers = handlers
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


# ------------------------------------------------------------
# Metrics instruments
# ------------------------------------------------------------
BUILDS_TOTAL = Counter(
    "harness_builds_total", "Build attempts by outcome", labelnames=("outcome",)
)
BUILD_DURATION_SECONDS = Histogram(
    "harness_build_duration_seconds", "Duration of a build step in seconds"
)
RUNTIME_STARTS_TOTAL = Counter(
    "harness_runtime_starts_total", "Runtime processes launched"
)
RUNTIME_EXITS_TOTAL = Counter(
    "harness_runtime_exits_total", "Runtime process exits", labelnames=("reason",)
)
SSE_SUBSCRIBERS = Gauge(
    "harness_sse_subscribers", "Currently connected event stream viewers"
)
BROADCAST_LINES_TOTAL = Counter(
    "harness_broadcast_lines_total", "Lines published to viewers", labelnames=("kind",)
)
SUBSCRIBERS_DROPPED_TOTAL = Counter(
    "harness_subscribers_dropped_total", "Viewers dropped because their queue overflowed"
)
WATCH_TRIGGERS_TOTAL = Counter(
    "harness_watch_triggers_total", "Debounced rebuild requests emitted by the watcher"
)


# ------------------------------------------------------------
# Context dataclass
# ------------------------------------------------------------
@dataclass(slots=True)
class AppContext:
    settings: Settings
    logger: structlog.BoundLogger
    broadcaster: "Broadcaster"
    supervisor: "ProcessSupervisor"
    coordinator: "BuildCoordinator"
    watcher: Optional["SourceWatcher"] = None

    def target_exists(self) -> bool:
        return self.settings.target_file.exists()


_context_singleton: Optional[AppContext] = None
_context_lock = asyncio.Lock()


def build_context(settings: Settings) -> AppContext:
    """Wire the pipeline components for the given settings (no tasks started)."""
    # Lazy imports: the components import the metric instruments above
    from server.events import Broadcaster
    from .builder import BuildCoordinator
    from .supervisor import ProcessSupervisor
    from .watcher import SourceWatcher

    logger = structlog.get_logger().bind(component="bootstrap")
    broadcaster = Broadcaster(queue_size=settings.subscriber_queue_size)
    supervisor = ProcessSupervisor(settings, broadcaster)
    coordinator = BuildCoordinator(settings, broadcaster, supervisor)
    watcher = None
    if settings.watch_enabled:
        watcher = SourceWatcher(settings, broadcaster, coordinator)
    return AppContext(
        settings=settings,
        logger=logger.bind(subsystem="core"),
        broadcaster=broadcaster,
        supervisor=supervisor,
        coordinator=coordinator,
        watcher=watcher,
    )


async def bootstrap(force: bool = False) -> AppContext:
    """Create (or return existing) application context.

    Args:
        force: Recreate the context even if already initialized (rarely needed).
    """
    global _context_singleton
    if _context_singleton and not force:
        return _context_singleton

    async with _context_lock:
        if _context_singleton and not force:
            return _context_singleton

        t0 = time.perf_counter()
        settings = Settings()  # Loads from env automatically
        configure_logging(settings.log_level, settings)
        logger = structlog.get_logger().bind(component="bootstrap")

        if not settings.target_file.exists():
            # Not fatal: the first build reports it on the event stream
            logger.warning("target_file_missing", path=str(settings.target_file))

        ctx = build_context(settings)
        elapsed = time.perf_counter() - t0
        log_method = logger.debug if settings.quiet_startup else logger.info
        log_method(
            "bootstrap_complete",
            project_root=str(settings.project_root),
            target=str(settings.target_file),
            mode=settings.build_mode,
            runtime=settings.runtime_command,
            watch=settings.watch_enabled,
            elapsed=f"{elapsed:.3f}s",
        )
        _context_singleton = ctx
        return ctx


# ------------------------------------------------------------
# Helper accessors
# ------------------------------------------------------------
async def get_context() -> AppContext:
    """Public accessor for the global application context."""
    return await bootstrap()


def reset_context() -> None:
    """Forget the current context so the next get_context() rebuilds it."""
    global _context_singleton
    _context_singleton = None
