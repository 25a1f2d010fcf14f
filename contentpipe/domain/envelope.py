"""
Modèle de l'enveloppe de changement et des résultats du pipeline (POPO).

Une enveloppe est l'unité de travail entrante poussée par un système source. Les
résultats (`RouteResult`, `ProcessResult`, `EnvelopeOutcome`) sont les valeurs échangées
entre le routeur, le coordinateur et le gestionnaire de retry.
"""

# ============================================================
# Module : contentpipe/domain/envelope.py
# Objet  : Enveloppe de changement, états et résultats (POPO).
# ============================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class OperationKind(str, Enum):
    """Nature de la mutation demandée par la source."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class EnvelopeStatus(str, Enum):
    """États de la machine à états d'une enveloppe."""

    PENDING = "pending"
    PROCESSING = "processing"
    RETRY_SCHEDULED = "retry_scheduled"
    COMMITTED = "committed"
    DEAD_LETTERED = "dead_lettered"

    @property
    def terminal(self) -> bool:
        """Vrai pour `committed` et `dead_lettered`."""
        return self in (EnvelopeStatus.COMMITTED, EnvelopeStatus.DEAD_LETTERED)


@dataclass(frozen=True)
class EnvelopePayload:
    """Contenu textuel et paires de métadonnées brutes."""

    text: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ChangeEnvelope:
    """
    Demande de changement unitaire émise par une source.

    Attributs
    - idempotency_key: clé unique par source (fournie ou dérivée).
    - source: identifiant du système source.
    - operation: create | update | delete.
    - content_id: contenu ciblé (None pour create).
    - payload: texte + métadonnées brutes.
    - received_at: horodatage de réception.
    - correlation_id: identifiant de corrélation (défaut: `{source}:{clé}`).
    """

    idempotency_key: str
    source: str
    operation: OperationKind
    payload: EnvelopePayload
    content_id: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    correlation_id: str | None = None

    @property
    def ref(self) -> EnvelopeRef:
        """Référence compacte (source, clé) de l'enveloppe."""
        return EnvelopeRef(source=self.source, idempotency_key=self.idempotency_key)

    @property
    def correlation(self) -> str:
        """Identifiant de corrélation effectif."""
        return self.correlation_id or f"{self.source}:{self.idempotency_key}"


@dataclass(frozen=True)
class EnvelopeRef:
    """Adresse d'une enveloppe dans l'Envelope Store."""

    source: str
    idempotency_key: str

    def __str__(self) -> str:
        return f"{self.source}:{self.idempotency_key}"


@dataclass(frozen=True)
class EnvelopeOutcome:
    """Dernier résultat enregistré pour une enveloppe (renvoyé aux doublons)."""

    status: EnvelopeStatus
    content_id: str | None = None
    version_id: int | None = None
    version: int | None = None
    error: str | None = None
    attempts: int = 0


class RouteKind(str, Enum):
    """Issue du routage."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"


@dataclass(frozen=True)
class RouteResult:
    """Résultat de `IngestionRouter.route`."""

    kind: RouteKind
    envelope: ChangeEnvelope | None = None
    outcome: EnvelopeOutcome | None = None
    reason: str | None = None

    @classmethod
    def accepted(cls, envelope: ChangeEnvelope, outcome: EnvelopeOutcome) -> RouteResult:
        return cls(kind=RouteKind.ACCEPTED, envelope=envelope, outcome=outcome)

    @classmethod
    def duplicate(cls, envelope: ChangeEnvelope, outcome: EnvelopeOutcome) -> RouteResult:
        return cls(kind=RouteKind.DUPLICATE, envelope=envelope, outcome=outcome)

    @classmethod
    def rejected(cls, reason: str) -> RouteResult:
        return cls(kind=RouteKind.REJECTED, reason=reason)


class ProcessKind(str, Enum):
    """Issue d'une tentative de traitement."""

    COMMITTED = "committed"
    FAILED = "failed"
    RETRYABLE = "retryable"


@dataclass(frozen=True)
class ProcessResult:
    """Résultat de `ProcessingCoordinator.process` (une tentative)."""

    kind: ProcessKind
    content_id: str | None = None
    version_id: int | None = None
    version: int | None = None
    errors: tuple[str, ...] = ()

    @classmethod
    def committed(cls, content_id: str, version_id: int, version: int) -> ProcessResult:
        return cls(
            kind=ProcessKind.COMMITTED,
            content_id=content_id,
            version_id=version_id,
            version=version,
        )

    @classmethod
    def failed(cls, errors: list[str]) -> ProcessResult:
        return cls(kind=ProcessKind.FAILED, errors=tuple(errors))

    @classmethod
    def retryable(cls, errors: list[str]) -> ProcessResult:
        return cls(kind=ProcessKind.RETRYABLE, errors=tuple(errors))

    @property
    def error_text(self) -> str:
        """Erreurs concaténées pour persistance."""
        return "; ".join(self.errors)
