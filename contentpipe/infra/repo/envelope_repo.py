# ============================================================
# Module : contentpipe/infra/repo/envelope_repo.py
# Objet  : Envelope Store (dédup par (source, clé) + état + résultat).
# ============================================================
"""Envelope Store: enregistrement des enveloppes entrantes et de leur état.

La contrainte unique (source, idempotency_key) tient lieu de verrou exclusif par clé:
deux soumissions concurrentes de la même clé ne peuvent créer qu'une seule ligne, la
seconde observe le résultat de la première.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ...app.metrics import ENVELOPE_TRANSITIONS_TOTAL
from ...domain.envelope import (
    ChangeEnvelope,
    EnvelopeOutcome,
    EnvelopePayload,
    EnvelopeRef,
    EnvelopeStatus,
    OperationKind,
)
from ...domain.errors import EnvelopeNotFoundError, InvalidTransitionError
from .db import session_scope
from .models import EnvelopeORM

# Transitions autorisées par la machine à états
_ALLOWED: dict[EnvelopeStatus, set[EnvelopeStatus]] = {
    EnvelopeStatus.PENDING: {EnvelopeStatus.PROCESSING, EnvelopeStatus.DEAD_LETTERED},
    EnvelopeStatus.PROCESSING: {
        EnvelopeStatus.COMMITTED,
        EnvelopeStatus.RETRY_SCHEDULED,
        EnvelopeStatus.DEAD_LETTERED,
    },
    EnvelopeStatus.RETRY_SCHEDULED: {EnvelopeStatus.PROCESSING, EnvelopeStatus.DEAD_LETTERED},
    EnvelopeStatus.COMMITTED: set(),
    EnvelopeStatus.DEAD_LETTERED: set(),
}


def _aware(ts: datetime | None) -> datetime | None:
    # SQLite restitue des datetimes naïfs (UTC)
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=UTC)
    return ts


def _outcome(row: EnvelopeORM) -> EnvelopeOutcome:
    return EnvelopeOutcome(
        status=EnvelopeStatus(row.status),
        content_id=row.outcome_content_id,
        version_id=row.outcome_version_id,
        version=row.outcome_version,
        error=row.last_error,
        attempts=row.attempts,
    )


def _envelope(row: EnvelopeORM) -> ChangeEnvelope:
    payload = row.payload or {}
    return ChangeEnvelope(
        idempotency_key=row.idempotency_key,
        source=row.source,
        operation=OperationKind(row.operation),
        content_id=row.content_id,
        payload=EnvelopePayload(
            text=payload.get("text", ""), metadata=dict(payload.get("metadata") or {})
        ),
        received_at=row.received_at,
        correlation_id=row.correlation_id,
    )


class EnvelopeRecord:
    """Vue lecture d'une enveloppe stockée (enveloppe + état + résultat)."""

    def __init__(self, row: EnvelopeORM) -> None:
        self.envelope = _envelope(row)
        self.outcome = _outcome(row)
        self.next_attempt_at: datetime | None = _aware(row.next_attempt_at)
        self.archived_at: datetime | None = row.archived_at
        self.updated_at: datetime = _aware(row.updated_at)

    @property
    def status(self) -> EnvelopeStatus:
        return self.outcome.status

    def to_dict(self) -> dict[str, Any]:
        env = self.envelope
        return {
            "source": env.source,
            "idempotency_key": env.idempotency_key,
            "operation": env.operation.value,
            "content_id": env.content_id,
            "correlation_id": env.correlation,
            "received_at": env.received_at.isoformat() if env.received_at else None,
            "status": self.outcome.status.value,
            "attempts": self.outcome.attempts,
            "error": self.outcome.error,
            "outcome": {
                "content_id": self.outcome.content_id,
                "version_id": self.outcome.version_id,
                "version": self.outcome.version,
            },
            "next_attempt_at": self.next_attempt_at.isoformat() if self.next_attempt_at else None,
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
        }


class EnvelopeStore:
    """CRUD et transitions d'état des enveloppes."""

    def __init__(self, session_factory: sessionmaker) -> None:
        """Construit le store avec une factory de sessions (SQLAlchemy)."""
        self._factory = session_factory
        self._log = structlog.get_logger(__name__).bind(component="envelope_store")

    def register(self, envelope: ChangeEnvelope) -> tuple[EnvelopeRecord, bool]:
        """Persiste l'enveloppe en `pending` si sa clé est inconnue.

        Returns:
            (enregistrement, créé). `créé` vaut False si la clé existait déjà: l'enregistrement
            renvoyé porte alors le résultat antérieur.
        """
        try:
            with session_scope(self._factory) as session:
                row = EnvelopeORM(
                    source=envelope.source,
                    idempotency_key=envelope.idempotency_key,
                    operation=envelope.operation.value,
                    content_id=envelope.content_id,
                    payload={
                        "text": envelope.payload.text,
                        "metadata": dict(envelope.payload.metadata),
                    },
                    correlation_id=envelope.correlation,
                    received_at=envelope.received_at,
                    status=EnvelopeStatus.PENDING.value,
                    attempts=0,
                    updated_at=datetime.now(UTC),
                )
                session.add(row)
                session.flush()
                record = EnvelopeRecord(row)
            ENVELOPE_TRANSITIONS_TOTAL.labels(state=EnvelopeStatus.PENDING.value).inc()
            return record, True
        except IntegrityError:
            existing = self.get(envelope.ref)
            if existing is None:  # pragma: no cover - contrainte violée sur autre colonne
                raise
            return existing, False

    def get(self, ref: EnvelopeRef) -> EnvelopeRecord | None:
        """Retourne l'enveloppe stockée, ou None si inconnue."""
        with session_scope(self._factory) as session:
            row = self._row(session, ref)
            return EnvelopeRecord(row) if row else None

    def require(self, ref: EnvelopeRef) -> EnvelopeRecord:
        record = self.get(ref)
        if record is None:
            raise EnvelopeNotFoundError(f"unknown envelope {ref}")
        return record

    def _row(self, session: Session, ref: EnvelopeRef) -> EnvelopeORM | None:
        return session.execute(
            select(EnvelopeORM).where(
                EnvelopeORM.source == ref.source,
                EnvelopeORM.idempotency_key == ref.idempotency_key,
            )
        ).scalar_one_or_none()

    def transition(
        self,
        ref: EnvelopeRef,
        target: EnvelopeStatus,
        *,
        expected: set[EnvelopeStatus] | None = None,
        error: str | None = None,
        increment_attempts: bool = False,
        next_attempt_at: datetime | None = None,
        outcome: tuple[str, int, int] | None = None,
        after_commit: Callable[[Session], None] | None = None,
    ) -> EnvelopeRecord:
        """Applique une transition d'état dans une transaction.

        Args:
            ref: enveloppe ciblée.
            target: nouvel état.
            expected: états de départ acceptés (défaut: ceux autorisés par la machine).
            error: erreur déclenchante conservée.
            increment_attempts: compte une tentative de traitement.
            next_attempt_at: échéance du prochain retry.
            outcome: (content_id, version_id, version) pour `committed`.
            after_commit: callback recevant la session pour y attacher des actions post-commit.

        Raises:
            EnvelopeNotFoundError, InvalidTransitionError.
        """
        with session_scope(self._factory) as session:
            row = self._row(session, ref)
            if row is None:
                raise EnvelopeNotFoundError(f"unknown envelope {ref}")
            current = EnvelopeStatus(row.status)
            allowed = expected if expected is not None else {
                s for s, targets in _ALLOWED.items() if target in targets
            }
            if current not in allowed or target not in _ALLOWED[current]:
                raise InvalidTransitionError(f"{ref}: {current.value} -> {target.value}")
            now = datetime.now(UTC)
            row.status = target.value
            row.updated_at = now
            row.next_attempt_at = next_attempt_at
            if increment_attempts:
                row.attempts = (row.attempts or 0) + 1
            if error is not None:
                row.last_error = error
            if outcome is not None:
                row.outcome_content_id, row.outcome_version_id, row.outcome_version = outcome
            if target.terminal:
                row.archived_at = now
            session.flush()
            if after_commit is not None:
                after_commit(session)
            record = EnvelopeRecord(row)
        ENVELOPE_TRANSITIONS_TOTAL.labels(state=target.value).inc()
        self._log.debug("envelope_transition", ref=str(ref), src=current.value, dst=target.value)
        return record

    def reopen(self, ref: EnvelopeRef) -> EnvelopeRecord:
        """Remet une enveloppe dead-letter en `pending` (re-soumission manuelle)."""
        with session_scope(self._factory) as session:
            row = self._row(session, ref)
            if row is None:
                raise EnvelopeNotFoundError(f"unknown envelope {ref}")
            if row.status != EnvelopeStatus.DEAD_LETTERED.value:
                raise InvalidTransitionError(f"{ref}: only dead-lettered envelopes can be replayed")
            row.status = EnvelopeStatus.PENDING.value
            row.attempts = 0
            row.archived_at = None
            row.next_attempt_at = None
            row.updated_at = datetime.now(UTC)
            session.flush()
            record = EnvelopeRecord(row)
        ENVELOPE_TRANSITIONS_TOTAL.labels(state=EnvelopeStatus.PENDING.value).inc()
        self._log.info("envelope_reopened", ref=str(ref))
        return record

    def reclaim(self, ref: EnvelopeRef, stale_before: datetime) -> EnvelopeRecord | None:
        """Reprend une tentative abandonnée: `processing` -> `retry_scheduled`, dû immédiatement.

        Sans effet (None) si l'enveloppe n'est plus `processing` ou si sa dernière
        transition est postérieure à `stale_before`.
        """
        with session_scope(self._factory) as session:
            row = self._row(session, ref)
            if row is None or row.status != EnvelopeStatus.PROCESSING.value:
                return None
            if _aware(row.updated_at) > stale_before:
                return None
            now = datetime.now(UTC)
            row.status = EnvelopeStatus.RETRY_SCHEDULED.value
            row.last_error = "processing lease expired"
            row.next_attempt_at = now
            row.updated_at = now
            session.flush()
            record = EnvelopeRecord(row)
        ENVELOPE_TRANSITIONS_TOTAL.labels(state=EnvelopeStatus.RETRY_SCHEDULED.value).inc()
        self._log.warning("envelope_reclaimed", ref=str(ref), attempts=record.outcome.attempts)
        return record

    def list_stale(
        self,
        status: EnvelopeStatus,
        updated_before: datetime | None = None,
        limit: int = 500,
    ) -> list[EnvelopeRecord]:
        """Enveloppes d'un état non terminal, les plus anciennes d'abord (reprise au démarrage)."""
        with session_scope(self._factory) as session:
            stmt = select(EnvelopeORM).where(EnvelopeORM.status == status.value)
            if updated_before is not None:
                stmt = stmt.where(EnvelopeORM.updated_at <= updated_before)
            stmt = stmt.order_by(EnvelopeORM.updated_at.asc(), EnvelopeORM.id.asc()).limit(limit)
            return [EnvelopeRecord(r) for r in session.execute(stmt).scalars().all()]

    def list_by_status(
        self, status: EnvelopeStatus, source: str | None = None, limit: int = 100
    ) -> list[EnvelopeRecord]:
        """Liste les enveloppes d'un état (ex: dead-letters pour l'admin)."""
        with session_scope(self._factory) as session:
            stmt = select(EnvelopeORM).where(EnvelopeORM.status == status.value)
            if source is not None:
                stmt = stmt.where(EnvelopeORM.source == source)
            stmt = stmt.order_by(EnvelopeORM.updated_at.desc(), EnvelopeORM.id.desc()).limit(limit)
            return [EnvelopeRecord(r) for r in session.execute(stmt).scalars().all()]
