"""Pipeline d'ingestion: Router -> Coordinator -> Retry manager, et workers par source.

Un message de file est soit une enveloppe brute (ou `{"kind": "ingest", "envelope": ...}`),
soit une reprise `{"kind": "resume", "source", "idempotency_key"}` déposée par le
planificateur de retry, soit un rejeu admin `{"kind": "replay", ...}`.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from ..core.constants import MESSAGE_KIND_INGEST, MESSAGE_KIND_REPLAY, MESSAGE_KIND_RESUME
from ..domain.envelope import (
    ChangeEnvelope,
    EnvelopeRef,
    EnvelopeStatus,
    ProcessResult,
    RouteResult,
)
from ..domain.errors import EnvelopeNotFoundError, InvalidTransitionError
from ..infra.queue.source_queues import SourceQueues
from ..infra.repo.audit_repo import AuditLog
from ..infra.repo.envelope_repo import EnvelopeRecord, EnvelopeStore
from .coordinator import ProcessingCoordinator
from .retry_manager import RetryManager
from .router import IngestionRouter


class IngestionPipeline:
    """Façade qui relie les trois étapes autour d'une enveloppe."""

    def __init__(
        self,
        envelopes: EnvelopeStore,
        audit: AuditLog,
        coordinator: ProcessingCoordinator,
        retries: RetryManager,
        actor: str = "contentpipe",
        processing_lease: float | None = None,
    ) -> None:
        self.envelopes = envelopes
        self.coordinator = coordinator
        self.retries = retries
        self.processing_lease = processing_lease
        self.router = IngestionRouter(
            envelopes,
            audit,
            dispatcher=self._dispatch,
            actor=actor,
            processing_lease=processing_lease,
            on_duplicate=self._settle_duplicate,
        )
        self._log = structlog.get_logger(__name__).bind(component="ingestion_pipeline")

    def ingest(
        self,
        message: Mapping[str, Any] | ChangeEnvelope,
        source: str | None = None,
        resubmit: bool = False,
    ) -> RouteResult:
        return self.router.route(message, source=source, resubmit=resubmit)

    def attempt(self, envelope: ChangeEnvelope) -> EnvelopeRecord | None:
        """Une tentative complète: `processing`, traitement, puis résultat enregistré."""
        ref = envelope.ref
        if self.retries.start_attempt(ref) is None:
            return None
        try:
            result = self.coordinator.process(envelope)
        except Exception as exc:
            self._log.exception("process_crashed", ref=str(ref))
            result = ProcessResult.retryable([f"unexpected {type(exc).__name__}: {exc}"])
        try:
            return self.retries.on_result(ref, result)
        except InvalidTransitionError:
            self._log.warning("outcome_dropped", ref=str(ref), result=result.kind.value)
            return self.envelopes.get(ref)

    def _dispatch(self, envelope: ChangeEnvelope) -> bool:
        return self.attempt(envelope) is not None

    def _settle_duplicate(self, record: EnvelopeRecord) -> None:
        # Un fait DEAD_LETTER perdu (audit indisponible) est réécrit à la relivraison
        if record.status is EnvelopeStatus.DEAD_LETTERED:
            self.retries.ensure_dead_letter_audit(record)

    def resume(self, source: str, idempotency_key: str) -> EnvelopeRecord | None:
        """Reprise planifiée d'une enveloppe `retry_scheduled` (ou `pending` orpheline).

        Sans effet sur les autres états.
        """
        ref = EnvelopeRef(source=source, idempotency_key=idempotency_key)
        record = self.envelopes.get(ref)
        if record is None or record.status not in (
            EnvelopeStatus.RETRY_SCHEDULED,
            EnvelopeStatus.PENDING,
        ):
            self._log.info(
                "resume_ignored",
                ref=str(ref),
                status=record.status.value if record else None,
            )
            if record is not None:
                self._settle_duplicate(record)
            return record
        return self.attempt(record.envelope) or self.envelopes.get(ref)

    def recover(self) -> dict[str, int]:
        """Replanifie les enveloppes non terminales laissées par un process précédent."""
        return self.retries.recover(self.processing_lease or 0.0)

    def replay(self, source: str, idempotency_key: str) -> RouteResult:
        """Re-soumission manuelle d'une dead-letter via le Router, clé d'origine conservée.

        Raises:
            EnvelopeNotFoundError, InvalidTransitionError (enveloppe non dead-letter).
        """
        record = self.envelopes.require(EnvelopeRef(source=source, idempotency_key=idempotency_key))
        if record.status is not EnvelopeStatus.DEAD_LETTERED:
            raise InvalidTransitionError(
                f"{record.envelope.ref}: only dead-lettered envelopes can be replayed"
            )
        return self.router.route(record.envelope, resubmit=True)

    def cancel(self, source: str, idempotency_key: str, reason: str) -> EnvelopeRecord:
        return self.retries.cancel(source, idempotency_key, reason)

    def handle(self, message: Mapping[str, Any], source: str | None = None) -> Any:
        """Traite un message de file selon son type."""
        kind = message.get("kind")
        if kind == MESSAGE_KIND_RESUME:
            return self.resume(message["source"], message["idempotency_key"])
        if kind == MESSAGE_KIND_REPLAY:
            try:
                return self.replay(message["source"], message["idempotency_key"])
            except (EnvelopeNotFoundError, InvalidTransitionError) as exc:
                self._log.warning("replay_ignored", error=str(exc))
                return None
        if kind == MESSAGE_KIND_INGEST:
            return self.ingest(message.get("envelope") or {}, source=source)
        return self.ingest(message, source=source)

    def close(self) -> None:
        self.coordinator.close()
        self.retries.scheduler.close()


class WorkerPool:
    """Un thread de drainage par source: ordre préservé par source uniquement.

    Un message n'est acquitté qu'une fois son résultat enregistré (commit, retry
    planifié, dead-letter ou rejet). Une erreur inattendue le remet en tête de file.
    """

    def __init__(
        self,
        queues: SourceQueues,
        pipeline: IngestionPipeline,
        sources: Iterable[str],
        poll_timeout: float = 1.0,
    ) -> None:
        self.queues = queues
        self.pipeline = pipeline
        self.sources = list(dict.fromkeys(sources))
        self.poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._log = structlog.get_logger(__name__).bind(component="worker_pool")

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for source in self.sources:
            t = threading.Thread(
                target=self._drain, args=(source,), name=f"worker-{source}", daemon=True
            )
            t.start()
            self._threads.append(t)
        self._log.info("workers_started", sources=self.sources)

    def _drain(self, source: str) -> None:
        while not self._stop.is_set():
            self.process_one(source)

    def process_one(self, source: str, timeout: float | None = None) -> bool:
        """Consomme au plus un message; renvoie True si un message a été lu."""
        delivery = self.queues.get(
            source, timeout=self.poll_timeout if timeout is None else timeout
        )
        if delivery is None:
            return False
        try:
            self.pipeline.handle(delivery.message, source=source)
        except Exception:
            self._log.exception("message_handling_failed", source=source)
            self.queues.nack(delivery)
            # Évite de boucler à chaud sur un message qui échoue (base indisponible...)
            self._stop.wait(self.poll_timeout)
            return True
        self.queues.ack(delivery)
        return True

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
        self._log.info("workers_stopped")

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)
