# ============================================================
# Module : contentpipe/infra/monitoring/celery_exporter.py
# Objet  : Métriques Prometheus et spans OTEL des tâches Celery d'ingestion.
# ============================================================
"""Instrumentation des tâches Celery.

Compteurs de succès/échec, durées d'exécution et un span OpenTelemetry par tâche,
alimentés par les signaux Celery.
"""

from __future__ import annotations

import contextlib
import threading
import time
from typing import Any

from celery import signals
from opentelemetry import trace
from prometheus_client import Counter, Histogram

TASK_SUCCESS = Counter("celery_task_success_total", "Tasks réussies", ["task"])
TASK_FAILURE = Counter("celery_task_failure_total", "Tasks échouées", ["task"])
TASK_RUNTIME_SECONDS = Histogram(
    "celery_task_runtime_seconds", "Durée d'exécution des tâches", ["task"]
)

_starts: dict[str, float] = {}
_spans: dict[str, Any] = {}
_bound = threading.Event()


def on_task_prerun(task_id: str, task_name: str) -> None:
    """Gère le démarrage d'une tâche Celery."""
    _starts[task_id] = time.time()
    _spans[task_id] = trace.get_tracer(__name__).start_span(name=f"celery:{task_name}")


def on_task_postrun(task_id: str, task_name: str, state: str) -> None:
    """Gère la fin d'une tâche Celery."""
    start = _starts.pop(task_id, None)
    if start is not None:
        TASK_RUNTIME_SECONDS.labels(task=task_name).observe(max(0.0, time.time() - start))
    if state.upper() == "SUCCESS":
        TASK_SUCCESS.labels(task=task_name).inc()
    _end_span(task_id)


def on_task_failure(task_id: str, task_name: str) -> None:
    """Gère l'échec d'une tâche Celery."""
    TASK_FAILURE.labels(task=task_name).inc()
    _end_span(task_id)


def _end_span(task_id: str) -> None:
    span = _spans.pop(task_id, None)
    if span is not None:
        with contextlib.suppress(Exception):  # pragma: no cover - span déjà fermé
            span.end()


def bind_celery_signals(celery_app) -> None:  # type: ignore[no-untyped-def]
    """Attache les handlers de signaux Celery (une seule fois par process)."""
    if _bound.is_set():
        return
    _bound.set()

    @signals.task_prerun.connect(weak=False)
    def _pre(sender=None, task_id: str = "", task=None, **kw):  # type: ignore[no-untyped-def]
        name = getattr(sender, "name", None) or getattr(task, "name", None) or "unknown"
        on_task_prerun(task_id=task_id, task_name=name)

    @signals.task_postrun.connect(weak=False)
    def _post(sender=None, task_id: str = "", state: str = "", **kw):  # type: ignore[no-untyped-def]
        name = getattr(sender, "name", None) or "unknown"
        on_task_postrun(task_id=task_id, task_name=name, state=state or "")

    @signals.task_failure.connect(weak=False)
    def _fail(sender=None, task_id: str = "", **kw):  # type: ignore[no-untyped-def]
        name = getattr(sender, "name", None) or "unknown"
        on_task_failure(task_id=task_id, task_name=name)
