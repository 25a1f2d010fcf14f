"""Audit log append-only, sur moteur indépendant du Content Version Store.

Chaque écriture est sa propre transaction: un rollback côté contenu n'annule jamais un
fait d'audit déjà écrit. L'unicité (correlation_id, resource_id, operation) rend
l'écriture idempotente face aux rejeux du coordinateur.
"""

from __future__ import annotations

from typing import Protocol

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from ...app.metrics import AUDIT_RECORDS_TOTAL
from ...domain.audit import AuditOperation, AuditRecord
from .db import session_scope
from .models import AuditRecordORM


class ComplianceSink(Protocol):
    """Destinataire des notifications de conformité (fire-and-forget)."""

    def notify(self, record: AuditRecord) -> None: ...


class AuditLog:
    """Écriture et lecture des faits d'audit."""

    def __init__(self, session_factory: sessionmaker, notifier: ComplianceSink | None = None):
        """Construit l'audit log avec sa propre factory de sessions."""
        self._factory = session_factory
        self._notifier = notifier
        self._log = structlog.get_logger(__name__).bind(component="audit_log")

    def record(self, record: AuditRecord) -> bool:
        """Écrit le fait d'audit s'il n'existe pas déjà.

        Returns:
            True si écrit, False si un fait identique existait (doublon toléré).
        """
        try:
            with session_scope(self._factory) as session:
                session.add(
                    AuditRecordORM(
                        correlation_id=record.correlation_id,
                        operation=record.operation.value,
                        resource_type=record.resource_type,
                        resource_id=record.resource_id,
                        actor=record.actor,
                        created_at=record.timestamp,
                        detail=record.detail,
                    )
                )
        except IntegrityError:
            AUDIT_RECORDS_TOTAL.labels(operation=record.operation.value, result="duplicate").inc()
            self._log.debug(
                "audit_duplicate",
                correlation_id=record.correlation_id,
                resource_id=record.resource_id,
                operation=record.operation.value,
            )
            return False
        AUDIT_RECORDS_TOTAL.labels(operation=record.operation.value, result="written").inc()
        self._log.info(
            "audit_recorded",
            correlation_id=record.correlation_id,
            resource_id=record.resource_id,
            operation=record.operation.value,
        )
        # Notification best-effort: ne bloque ni n'annule l'écriture d'audit
        if record.operation is AuditOperation.DELETE and self._notifier is not None:
            try:
                self._notifier.notify(record)
            except Exception:
                self._log.exception("compliance_notify_failed", resource_id=record.resource_id)
        return True

    def list_records(
        self,
        resource_id: str | None = None,
        correlation_id: str | None = None,
        operation: AuditOperation | None = None,
        limit: int = 500,
    ) -> list[AuditRecord]:
        """Liste les faits d'audit, filtrables, par ordre d'écriture."""
        with session_scope(self._factory) as session:
            stmt = select(AuditRecordORM)
            if resource_id is not None:
                stmt = stmt.where(AuditRecordORM.resource_id == resource_id)
            if correlation_id is not None:
                stmt = stmt.where(AuditRecordORM.correlation_id == correlation_id)
            if operation is not None:
                stmt = stmt.where(AuditRecordORM.operation == operation.value)
            stmt = stmt.order_by(AuditRecordORM.id).limit(limit)
            return [
                AuditRecord(
                    correlation_id=r.correlation_id,
                    operation=AuditOperation(r.operation),
                    resource_type=r.resource_type,
                    resource_id=r.resource_id,
                    actor=r.actor,
                    timestamp=r.created_at,
                    detail=r.detail,
                )
                for r in session.execute(stmt).scalars().all()
            ]
