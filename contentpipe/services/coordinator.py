# ============================================================
# Module : contentpipe/services/coordinator.py
# Objet  : Processing Coordinator (fan-out, agrégation, commit, audit).
# Invariants :
#  - agrégation tout-ou-rien sur les services requis;
#  - un service hors délai est abandonné et compte comme transitoire;
#  - commit puis audit; le signal d'invalidation part après commit.
# ============================================================
"""Processing Coordinator.

Une tentative = un fan-out concurrent vers les services applicables, une jointure
bornée par les timeouts, puis un commit unique dans le Content Version Store suivi
de l'écriture d'audit. Les résultats tardifs d'un service abandonné sont ignorés.
"""

from __future__ import annotations

import time
from collections.abc import Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any

import structlog
from opentelemetry import trace
from sqlalchemy.exc import DBAPIError

from ..app.metrics import PROCESS_RESULTS_TOTAL, SERVICE_CALLS_TOTAL, SERVICE_LATENCY
from ..domain.audit import AuditOperation, AuditRecord
from ..domain.envelope import ChangeEnvelope, ProcessKind, ProcessResult
from ..domain.errors import (
    PermanentProcessingError,
    ProcessingError,
    TransientProcessingError,
)
from ..domain.processing import ProcessingService, ServiceRequest, ServiceResult
from ..infra.repo.audit_repo import AuditLog
from ..infra.repo.content_version_repo import ContentVersionStore

tracer = trace.get_tracer(__name__)


@dataclass
class _ServiceOutcome:
    service: ProcessingService
    result: ServiceResult | None = None
    error: ProcessingError | None = None


def _call(service: ProcessingService, request: ServiceRequest) -> ServiceResult:
    """Exécute un service; toute exception non classée devient transitoire."""
    start = time.perf_counter()
    try:
        result = service.process(request)
    except ProcessingError:
        raise
    except Exception as exc:
        raise TransientProcessingError(
            f"{service.name}: unexpected {type(exc).__name__}: {exc}", service.name
        ) from exc
    finally:
        SERVICE_LATENCY.labels(service=service.name).observe(time.perf_counter() - start)
    return result if result is not None else ServiceResult()


class ProcessingCoordinator:
    """Fan-out vers les services de traitement puis commit transactionnel."""

    def __init__(
        self,
        services: Sequence[ProcessingService],
        store: ContentVersionStore,
        audit: AuditLog,
        *,
        actor: str = "contentpipe",
        max_workers: int = 16,
        default_timeout: float = 10.0,
    ) -> None:
        self.services = list(services)
        self.store = store
        self.audit = audit
        self.actor = actor
        self.default_timeout = default_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="fanout"
        )
        self._log = structlog.get_logger(__name__).bind(component="processing_coordinator")

    def process(self, envelope: ChangeEnvelope) -> ProcessResult:
        """Exécute une tentative de traitement pour l'enveloppe.

        Returns:
            `committed` avec (content_id, version_id, version), `failed` (permanent) ou
            `retryable` (transitoire).
        """
        with tracer.start_as_current_span("coordinator.process") as span:
            span.set_attribute("envelope.source", envelope.source)
            span.set_attribute("envelope.key", envelope.idempotency_key)
            span.set_attribute("envelope.operation", envelope.operation.value)
            result = self._attempt(envelope)
            span.set_attribute("process.result", result.kind.value)
        PROCESS_RESULTS_TOTAL.labels(
            operation=envelope.operation.value, result=result.kind.value
        ).inc()
        if result.kind is ProcessKind.COMMITTED:
            self._log.info(
                "process_committed",
                ref=str(envelope.ref),
                content_id=result.content_id,
                version=result.version,
            )
        else:
            self._log.warning(
                "process_not_committed",
                ref=str(envelope.ref),
                result=result.kind.value,
                errors=list(result.errors),
            )
        return result

    def _attempt(self, envelope: ChangeEnvelope) -> ProcessResult:
        outcomes = self._fan_out(envelope)

        permanent: list[str] = []
        transient: list[str] = []
        for outcome in outcomes:
            if outcome.error is None:
                continue
            if not outcome.service.required:
                self._log.info(
                    "optional_service_failed",
                    service=outcome.service.name,
                    reason=outcome.error.reason,
                )
                continue
            if isinstance(outcome.error, PermanentProcessingError):
                permanent.append(outcome.error.reason)
            else:
                transient.append(outcome.error.reason)
        if permanent:
            return ProcessResult.failed(permanent)
        if transient:
            return ProcessResult.retryable(transient)

        text, metadata = self._merge(envelope, outcomes)
        return self._commit(envelope, text, metadata)

    def _fan_out(self, envelope: ChangeEnvelope) -> list[_ServiceOutcome]:
        """Appelle en parallèle les services applicables, dans l'ordre configuré."""
        applicable = [s for s in self.services if s.applies_to(envelope.operation)]
        if not applicable:
            return []
        request = ServiceRequest(
            operation=envelope.operation,
            text=envelope.payload.text,
            metadata=dict(envelope.payload.metadata),
            content_id=envelope.content_id,
            correlation_id=envelope.correlation,
        )
        start = time.monotonic()
        futures: dict[Future, _ServiceOutcome] = {}
        deadlines: dict[Future, float] = {}
        for service in applicable:
            fut = self._executor.submit(_call, service, request)
            futures[fut] = _ServiceOutcome(service=service)
            deadlines[fut] = start + (service.timeout or self.default_timeout)

        pending = set(futures)
        while pending:
            now = time.monotonic()
            expired = {f for f in pending if not f.done() and deadlines[f] <= now}
            for fut in expired:
                # Abandon: le résultat éventuel ne sera jamais lu
                fut.cancel()
                outcome = futures[fut]
                outcome.error = TransientProcessingError(
                    f"{outcome.service.name}: timeout", outcome.service.name
                )
                SERVICE_CALLS_TOTAL.labels(service=outcome.service.name, result="timeout").inc()
                self._log.warning(
                    "service_timeout", service=outcome.service.name, ref=str(envelope.ref)
                )
            pending -= expired
            if not pending:
                break
            next_deadline = min(deadlines[f] for f in pending)
            done, pending = wait(
                pending, timeout=max(0.0, next_deadline - now), return_when=FIRST_COMPLETED
            )
            for fut in done:
                self._collect(fut, futures[fut])
        return [futures[f] for f in futures]

    def _collect(self, fut: Future, outcome: _ServiceOutcome) -> None:
        name = outcome.service.name
        try:
            outcome.result = fut.result()
        except ProcessingError as exc:
            outcome.error = exc
            SERVICE_CALLS_TOTAL.labels(service=name, result=exc.kind).inc()
            self._log.info("service_failed", service=name, kind=exc.kind, reason=exc.reason)
            return
        SERVICE_CALLS_TOTAL.labels(service=name, result="ok").inc()

    @staticmethod
    def _merge(
        envelope: ChangeEnvelope, outcomes: list[_ServiceOutcome]
    ) -> tuple[str, dict[str, Any]]:
        """Texte du dernier service qui en renvoie un; métadonnées fusionnées dans l'ordre."""
        text = envelope.payload.text
        metadata = dict(envelope.payload.metadata)
        for outcome in outcomes:
            if outcome.result is None:
                continue
            if outcome.result.text is not None:
                text = outcome.result.text
            metadata.update(outcome.result.metadata)
        return text, metadata

    def _commit(self, envelope: ChangeEnvelope, text: str, metadata: dict[str, Any]) -> ProcessResult:
        try:
            committed = self.store.commit(
                envelope.content_id,
                envelope.operation,
                text,
                metadata,
                actor=self.actor,
                envelope_ref=str(envelope.ref),
            )
        except PermanentProcessingError as exc:
            return ProcessResult.failed([exc.reason])
        except TransientProcessingError as exc:
            return ProcessResult.retryable([exc.reason])
        except DBAPIError as exc:
            self._log.warning("commit_storage_error", ref=str(envelope.ref), error=str(exc.orig))
            return ProcessResult.retryable([f"storage error: {type(exc.orig).__name__}"])

        try:
            self.audit.record(
                AuditRecord(
                    correlation_id=envelope.correlation,
                    operation=AuditOperation(envelope.operation.value.upper()),
                    resource_type="content",
                    resource_id=committed.content_id,
                    actor=self.actor,
                    detail={
                        "version": committed.version,
                        "version_id": committed.version_id,
                        "source": envelope.source,
                        "idempotency_key": envelope.idempotency_key,
                    },
                )
            )
        except DBAPIError as exc:
            # Le commit est acquis: la tentative suivante retrouve la version via
            # envelope_ref et ré-écrit l'audit de façon idempotente.
            self._log.warning("audit_storage_error", ref=str(envelope.ref), error=str(exc.orig))
            return ProcessResult.retryable([f"audit storage error: {type(exc.orig).__name__}"])
        return ProcessResult.committed(
            committed.content_id, committed.version_id, committed.version
        )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        for service in self.services:
            service.close()
