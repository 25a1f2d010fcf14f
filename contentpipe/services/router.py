# ============================================================
# Module : contentpipe/services/router.py
# Objet  : Ingestion Router (validation, dédup, dispatch).
# Invariants :
#  - une enveloppe rejetée n'est jamais persistée ni dispatchée;
#  - une clé déjà vue renvoie le résultat stocké, sans re-dispatch, sauf
#    enveloppe restée `pending` ou `processing` au-delà du bail;
#  - première vue: persistance `pending` puis dispatch.
# ============================================================
"""Ingestion Router: première étape du pipeline pour chaque message de file."""

from __future__ import annotations

import uuid
from collections.abc import Callable, Mapping
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from pydantic import ValidationError

from ..app.metrics import ENVELOPES_ROUTED_TOTAL
from ..domain.audit import AuditOperation, AuditRecord
from ..domain.envelope import (
    ChangeEnvelope,
    EnvelopePayload,
    EnvelopeStatus,
    RouteKind,
    RouteResult,
)
from ..domain.errors import EnvelopeValidationError
from ..domain.messages import EnvelopeMessage
from ..infra.ops.idempotency import derive_idempotency_key
from ..infra.repo.audit_repo import AuditLog
from ..infra.repo.envelope_repo import EnvelopeRecord, EnvelopeStore

Dispatcher = Callable[[ChangeEnvelope], Any]


def _format_validation_error(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "__root__")
        msg = err.get("msg", "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts) or "invalid envelope"


def parse_envelope(message: Mapping[str, Any], source: str | None = None) -> ChangeEnvelope:
    """Valide un message brut et construit l'enveloppe.

    Args:
        message: message décodé (JSON) reçu d'une file.
        source: source de la file, utilisée si le message n'en porte pas.

    Raises:
        EnvelopeValidationError: champ manquant, opération inconnue, payload vide...
    """
    data = dict(message)
    if source and not (data.get("source") or data.get("source_id")):
        data["source"] = source
    try:
        msg = EnvelopeMessage.model_validate(data)
    except ValidationError as exc:
        raise EnvelopeValidationError(_format_validation_error(exc)) from exc
    if source and msg.source != source:
        raise EnvelopeValidationError(f"source mismatch: {msg.source} on queue {source}")
    key = msg.idempotency_key or derive_idempotency_key(
        msg.source, msg.operation.value, msg.content_id, msg.payload
    )
    return ChangeEnvelope(
        idempotency_key=key,
        source=msg.source,
        operation=msg.operation,
        content_id=msg.content_id,
        payload=EnvelopePayload(text=msg.text, metadata=msg.metadata),
        received_at=msg.received_at,
        correlation_id=msg.correlation_id,
    )


class IngestionRouter:
    """Valide, déduplique et transmet les enveloppes au coordinateur.

    `dispatcher` reçoit l'enveloppe acceptée (le pipeline y branche une tentative de
    traitement); il est appelé de façon synchrone dans le worker de la source, ce qui
    préserve l'ordre intra-source. Un dispatcher qui renvoie `False` signale qu'une
    autre livraison a pris la tentative: le message est alors traité en doublon.

    Une clé déjà vue n'est re-dispatchée que si rien ne la fait plus avancer: enveloppe
    restée `pending`, ou `processing` depuis plus de `processing_lease` secondes (worker
    tombé en cours de tentative). `on_duplicate` reçoit les autres enregistrements vus
    en doublon.
    """

    def __init__(
        self,
        envelopes: EnvelopeStore,
        audit: AuditLog,
        dispatcher: Dispatcher | None = None,
        actor: str = "contentpipe",
        processing_lease: float | None = None,
        on_duplicate: Callable[[EnvelopeRecord], Any] | None = None,
    ) -> None:
        self.envelopes = envelopes
        self.audit = audit
        self.dispatcher = dispatcher
        self.actor = actor
        self.processing_lease = processing_lease
        self.on_duplicate = on_duplicate
        self._log = structlog.get_logger(__name__).bind(component="ingestion_router")

    def route(
        self,
        message: Mapping[str, Any] | ChangeEnvelope,
        *,
        source: str | None = None,
        resubmit: bool = False,
    ) -> RouteResult:
        """Route un message: `accepted`, `duplicate` ou `rejected`.

        Args:
            message: message brut ou enveloppe déjà construite.
            source: source de la file d'origine.
            resubmit: re-soumission admin; rouvre une enveloppe dead-letter.
        """
        if isinstance(message, ChangeEnvelope):
            envelope = message
        else:
            try:
                envelope = parse_envelope(message, source=source)
            except EnvelopeValidationError as exc:
                return self._reject(message, source, str(exc))

        record, created = self.envelopes.register(envelope)
        if not created:
            revived = self._revive(record, resubmit)
            if revived is None:
                return self._duplicate(record)
            record = revived
            envelope = record.envelope

        self._log.info(
            "envelope_accepted",
            ref=str(envelope.ref),
            operation=envelope.operation.value,
            content_id=envelope.content_id,
            redelivery=not created,
        )
        if self.dispatcher is not None:
            taken = self.dispatcher(envelope)
            refreshed = self.envelopes.get(envelope.ref)
            if refreshed is not None:
                record = refreshed
            if taken is False:
                return self._duplicate(record)
        ENVELOPES_ROUTED_TOTAL.labels(source=envelope.source, outcome="accepted").inc()
        return RouteResult.accepted(envelope, record.outcome)

    def _revive(self, record: EnvelopeRecord, resubmit: bool) -> EnvelopeRecord | None:
        """Enregistrement à re-dispatcher pour une clé déjà vue, ou None (doublon)."""
        ref = record.envelope.ref
        status = record.status
        if resubmit and status is EnvelopeStatus.DEAD_LETTERED:
            reopened = self.envelopes.reopen(ref)
            self._log.info("envelope_resubmitted", ref=str(ref))
            return reopened
        if status is EnvelopeStatus.PENDING:
            self._log.info("envelope_redelivered", ref=str(ref), status=status.value)
            return record
        if status is EnvelopeStatus.PROCESSING and self.processing_lease is not None:
            stale_before = datetime.now(UTC) - timedelta(seconds=self.processing_lease)
            if record.updated_at is not None and record.updated_at <= stale_before:
                reclaimed = self.envelopes.reclaim(ref, stale_before)
                if reclaimed is not None:
                    self._log.warning(
                        "envelope_redelivered", ref=str(ref), status=status.value
                    )
                    return reclaimed
        return None

    def _duplicate(self, record: EnvelopeRecord) -> RouteResult:
        envelope = record.envelope
        ENVELOPES_ROUTED_TOTAL.labels(source=envelope.source, outcome="duplicate").inc()
        self._log.info("envelope_duplicate", ref=str(envelope.ref), status=record.status.value)
        if self.on_duplicate is not None:
            self.on_duplicate(record)
        return RouteResult.duplicate(envelope, record.outcome)

    def _reject(self, message: Mapping[str, Any], source: str | None, reason: str) -> RouteResult:
        src = str(message.get("source") or message.get("source_id") or source or "unknown")
        key = message.get("idempotency_key") or message.get("key")
        correlation = f"{src}:{key}" if key else f"{src}:rejected:{uuid.uuid4().hex}"
        ENVELOPES_ROUTED_TOTAL.labels(source=src, outcome=RouteKind.REJECTED.value).inc()
        self._log.warning("envelope_rejected", source=src, key=key, reason=reason)
        self.audit.record(
            AuditRecord(
                correlation_id=correlation,
                operation=AuditOperation.REJECT,
                resource_type="envelope",
                resource_id=str(key or correlation),
                actor=self.actor,
                detail={"reason": reason, "source": src},
            )
        )
        return RouteResult.rejected(reason)
