"""Live-reload harness for BrightScript projects.

Ce paquet contient le pipeline de supervision build/run: le contexte
applicatif (bootstrap), le debouncer de fichiers, le coordinateur de build
et le superviseur du processus `brs`.

MODULES:
    - bootstrap: Configuration, logging, métriques et contexte applicatif
    - debouncer / watcher: Surveillance des sources et regroupement des changements
    - builder: Coordination des builds (un seul à la fois, relances fusionnées)
    - supervisor: Cycle de vie du processus runtime
    - models / errors: Types partagés et taxonomie des échecs
"""

from .models import (  # noqa: F401
    BroadcastMessage,
    BuildJob,
    BuildStatus,
    ExecutionResult,
    MessageKind,
    RuntimeProcess,
    RuntimeState,
    Trigger,
)

__all__ = [
    "BroadcastMessage",
    "BuildJob",
    "BuildStatus",
    "ExecutionResult",
    "MessageKind",
    "RuntimeProcess",
    "RuntimeState",
    "Trigger",
]
