# ============================================================
# Module : contentpipe/services/retry_manager.py
# Objet  : Retry / Dead-letter Manager (backoff, états, dead-letter).
# Invariants :
#  - `max_attempts` borne le nombre total de tentatives de traitement;
#  - échec permanent => dead-letter immédiat, zéro retry;
#  - un retry n'est planifié qu'après le commit de `retry_scheduled`;
#  - `committed` et `dead_lettered` sont terminaux.
# ============================================================

from __future__ import annotations

import random
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from ..app.metrics import DEAD_LETTERS_TOTAL, RETRIES_SCHEDULED_TOTAL
from ..core.constants import MESSAGE_KIND_RESUME, RESUME_TASK_NAME, celery_queue_for
from ..domain.audit import AuditOperation, AuditRecord
from ..domain.envelope import (
    EnvelopeRef,
    EnvelopeStatus,
    ProcessKind,
    ProcessResult,
)
from ..domain.errors import InvalidTransitionError
from ..infra.ops.post_commit import enqueue_task_after_commit, register_action_after_commit
from ..infra.repo.audit_repo import AuditLog
from ..infra.repo.envelope_repo import EnvelopeRecord, EnvelopeStore


@dataclass(frozen=True)
class BackoffPolicy:
    """Backoff exponentiel plafonné, avec jitter multiplicatif dans [0.5, 1.0]."""

    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 300.0
    jitter: bool = True

    def delay(self, attempt: int) -> float:
        """Délai avant la tentative suivant la tentative `attempt` (1-indexée)."""
        delay = min(self.base_delay * (2 ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter:
            delay *= random.uniform(0.5, 1.0)
        return delay

    def exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_attempts


def resume_message(ref: EnvelopeRef) -> dict[str, Any]:
    """Message de reprise déposé dans la file de la source."""
    return {
        "kind": MESSAGE_KIND_RESUME,
        "source": ref.source,
        "idempotency_key": ref.idempotency_key,
    }


def _dead_letter_reason(error: str | None) -> str:
    """Motif de dead-letter retrouvé depuis l'erreur conservée."""
    text = error or ""
    if text.startswith("cancelled:"):
        return "cancelled"
    if text.startswith("retries exhausted"):
        return "exhausted"
    return "permanent"


class RetryScheduler(ABC):
    """Déclenche la reprise d'une enveloppe après un délai."""

    @abstractmethod
    def schedule(self, ref: EnvelopeRef, delay: float) -> None:
        """Planifie la reprise de `ref` dans `delay` secondes."""

    def schedule_after_commit(self, session: Session, ref: EnvelopeRef, delay: float) -> None:
        """Attache la planification au commit de la session courante."""
        register_action_after_commit(session, self.schedule, ref, delay)

    def close(self) -> None:  # noqa: B027 - hook optionnel
        """Annule les reprises encore en attente."""


class ThreadRetryScheduler(RetryScheduler):
    """Minuteries in-process: ré-enfile un message `resume` dans la file de la source."""

    def __init__(self, enqueue: Callable[[str, dict[str, Any]], None]) -> None:
        self._enqueue = enqueue
        self._timers: set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._log = structlog.get_logger(__name__).bind(component="thread_retry_scheduler")

    def schedule(self, ref: EnvelopeRef, delay: float) -> None:
        timer = threading.Timer(delay, self._fire, args=(ref,))
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()
        self._log.debug("retry_timer_started", ref=str(ref), delay=round(delay, 3))

    def _fire(self, ref: EnvelopeRef) -> None:
        with self._lock:
            self._timers.discard(threading.current_thread())
        self._enqueue(ref.source, resume_message(ref))

    def pending(self) -> int:
        with self._lock:
            return sum(1 for t in self._timers if t.is_alive())

    def close(self) -> None:
        with self._lock:
            timers, self._timers = self._timers, set()
        for timer in timers:
            timer.cancel()


class CeleryRetryScheduler(RetryScheduler):
    """Reprise via tâche Celery différée (`countdown`) sur la queue de la source."""

    def __init__(self, celery_app, task_name: str = RESUME_TASK_NAME) -> None:
        self.celery_app = celery_app
        self.task_name = task_name

    def schedule(self, ref: EnvelopeRef, delay: float) -> None:
        self.celery_app.send_task(
            self.task_name,
            args=(ref.source, ref.idempotency_key),
            queue=celery_queue_for(ref.source),
            countdown=delay,
        )

    def schedule_after_commit(self, session: Session, ref: EnvelopeRef, delay: float) -> None:
        enqueue_task_after_commit(
            session,
            self.celery_app,
            self.task_name,
            ref.source,
            ref.idempotency_key,
            queue=celery_queue_for(ref.source),
            countdown=delay,
        )


class RetryManager:
    """Pilote la machine à états d'une enveloppe autour d'une tentative."""

    def __init__(
        self,
        envelopes: EnvelopeStore,
        audit: AuditLog,
        scheduler: RetryScheduler,
        policy: BackoffPolicy | None = None,
        actor: str = "contentpipe",
    ) -> None:
        self.envelopes = envelopes
        self.audit = audit
        self.scheduler = scheduler
        self.policy = policy or BackoffPolicy()
        self.actor = actor
        self._log = structlog.get_logger(__name__).bind(component="retry_manager")

    def start_attempt(self, ref: EnvelopeRef) -> EnvelopeRecord | None:
        """Passe l'enveloppe en `processing` et compte la tentative.

        Une enveloppe reprise après expiration de bail dont le budget de tentatives est
        déjà consommé part directement en dead-letter.

        Returns:
            L'enregistrement à jour, ou None si l'enveloppe n'est plus éligible
            (déjà terminale, en cours ailleurs ou annulée).
        """
        current = self.envelopes.get(ref)
        if (
            current is not None
            and current.status is EnvelopeStatus.RETRY_SCHEDULED
            and self.policy.exhausted(current.outcome.attempts)
        ):
            try:
                self.dead_letter(
                    ref,
                    f"retries exhausted after {current.outcome.attempts} attempts: "
                    f"{current.outcome.error}",
                    reason="exhausted",
                    expected={EnvelopeStatus.RETRY_SCHEDULED},
                )
            except InvalidTransitionError:
                self._log.info("attempt_skipped", ref=str(ref))
            return None
        try:
            return self.envelopes.transition(
                ref,
                EnvelopeStatus.PROCESSING,
                expected={EnvelopeStatus.PENDING, EnvelopeStatus.RETRY_SCHEDULED},
                increment_attempts=True,
            )
        except InvalidTransitionError:
            self._log.info("attempt_skipped", ref=str(ref))
            return None

    def on_result(self, ref: EnvelopeRef, result: ProcessResult) -> EnvelopeRecord:
        """Enregistre le résultat d'une tentative: commit, retry planifié ou dead-letter."""
        if result.kind is ProcessKind.COMMITTED:
            return self.envelopes.transition(
                ref,
                EnvelopeStatus.COMMITTED,
                expected={EnvelopeStatus.PROCESSING},
                outcome=(result.content_id, result.version_id, result.version),
            )
        if result.kind is ProcessKind.FAILED:
            return self.dead_letter(ref, result.error_text, reason="permanent")

        record = self.envelopes.require(ref)
        attempts = record.outcome.attempts
        if self.policy.exhausted(attempts):
            return self.dead_letter(
                ref,
                f"retries exhausted after {attempts} attempts: {result.error_text}",
                reason="exhausted",
            )
        delay = self.policy.delay(attempts)
        record = self.envelopes.transition(
            ref,
            EnvelopeStatus.RETRY_SCHEDULED,
            expected={EnvelopeStatus.PROCESSING},
            error=result.error_text,
            next_attempt_at=datetime.now(UTC) + timedelta(seconds=delay),
            after_commit=lambda session: self.scheduler.schedule_after_commit(session, ref, delay),
        )
        RETRIES_SCHEDULED_TOTAL.labels(source=ref.source).inc()
        self._log.info(
            "retry_scheduled",
            ref=str(ref),
            attempts=attempts,
            delay=round(delay, 3),
            error=result.error_text,
        )
        return record

    def dead_letter(
        self,
        ref: EnvelopeRef,
        error: str,
        reason: str,
        expected: set[EnvelopeStatus] | None = None,
    ) -> EnvelopeRecord:
        """Passe l'enveloppe en `dead_lettered`, erreur conservée, et l'audite.

        Raises:
            DBAPIError: écriture d'audit impossible. La transition reste acquise; le fait
                DEAD_LETTER est réécrit à la prochaine livraison de la même clé
                (`ensure_dead_letter_audit`).
        """
        record = self.envelopes.transition(
            ref, EnvelopeStatus.DEAD_LETTERED, expected=expected, error=error
        )
        DEAD_LETTERS_TOTAL.labels(source=ref.source, reason=reason).inc()
        self._log.warning("envelope_dead_lettered", ref=str(ref), reason=reason, error=error)
        try:
            self.audit.record(self._dead_letter_audit(record, reason))
        except DBAPIError as exc:
            self._log.error("dead_letter_audit_failed", ref=str(ref), error=str(exc))
            raise
        return record

    def ensure_dead_letter_audit(self, record: EnvelopeRecord) -> bool:
        """Réécrit le fait DEAD_LETTER d'une enveloppe dead-letter (idempotent).

        Returns:
            True si le fait manquait et vient d'être écrit.
        """
        if record.status is not EnvelopeStatus.DEAD_LETTERED:
            return False
        written = self.audit.record(
            self._dead_letter_audit(record, _dead_letter_reason(record.outcome.error))
        )
        if written:
            self._log.warning("dead_letter_audit_restored", ref=str(record.envelope.ref))
        return written

    def _dead_letter_audit(self, record: EnvelopeRecord, reason: str) -> AuditRecord:
        return AuditRecord(
            correlation_id=record.envelope.correlation,
            operation=AuditOperation.DEAD_LETTER,
            resource_type="envelope",
            resource_id=str(record.envelope.ref),
            actor=self.actor,
            detail={
                "reason": reason,
                "error": record.outcome.error,
                "attempts": record.outcome.attempts,
                "content_id": record.envelope.content_id,
            },
        )

    def recover(self, lease: float) -> dict[str, int]:
        """Reprise au démarrage des enveloppes dont la suite n'est portée par aucun message.

        - `processing` plus ancien que `lease`: tentative abandonnée, reprise immédiate;
        - `retry_scheduled`: replanifié à son échéance (immédiat si dépassée);
        - `pending` plus ancien que `lease`: message d'origine perdu, reprise immédiate.

        Les reprises sont idempotentes: une enveloppe déjà avancée entre-temps est ignorée.
        """
        now = datetime.now(UTC)
        stale_before = now - timedelta(seconds=lease)
        counts = {"reclaimed": 0, "rescheduled": 0, "pending": 0}

        reclaimed: set[EnvelopeRef] = set()
        for record in self.envelopes.list_stale(EnvelopeStatus.PROCESSING, stale_before):
            ref = record.envelope.ref
            if self.envelopes.reclaim(ref, stale_before) is not None:
                self.scheduler.schedule(ref, 0.0)
                reclaimed.add(ref)
        counts["reclaimed"] = len(reclaimed)

        for record in self.envelopes.list_stale(EnvelopeStatus.RETRY_SCHEDULED):
            ref = record.envelope.ref
            if ref in reclaimed:
                continue
            due = record.next_attempt_at or now
            self.scheduler.schedule(ref, max((due - now).total_seconds(), 0.0))
            counts["rescheduled"] += 1

        for record in self.envelopes.list_stale(EnvelopeStatus.PENDING, stale_before):
            self.scheduler.schedule(record.envelope.ref, 0.0)
            counts["pending"] += 1

        self._log.info("recovery_sweep_done", lease=lease, **counts)
        return counts

    def cancel(self, source: str, idempotency_key: str, reason: str) -> EnvelopeRecord:
        """Annulation opérateur: dead-letter direct, sans autre retry.

        Raises:
            EnvelopeNotFoundError: clé inconnue.
            InvalidTransitionError: enveloppe terminale ou tentative en cours.
        """
        ref = EnvelopeRef(source=source, idempotency_key=idempotency_key)
        record = self.envelopes.require(ref)
        if record.status not in (EnvelopeStatus.PENDING, EnvelopeStatus.RETRY_SCHEDULED):
            raise InvalidTransitionError(f"{ref}: cannot cancel from {record.status.value}")
        return self.dead_letter(
            ref,
            f"cancelled: {reason}",
            reason="cancelled",
            expected={EnvelopeStatus.PENDING, EnvelopeStatus.RETRY_SCHEDULED},
        )
