"""Contrat des services de traitement (traduction, accessibilité, validation...).

Les services sont des boîtes noires: ils reçoivent le payload de l'enveloppe et
l'opération, et renvoient soit un payload enrichi et des métadonnées additionnelles,
soit un échec classé `transient` / `permanent`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from .envelope import OperationKind

ALL_OPERATIONS = frozenset(OperationKind)


@dataclass(frozen=True)
class ServiceRequest:
    """Requête envoyée à chaque service pour une enveloppe."""

    operation: OperationKind
    text: str
    metadata: dict[str, Any]
    content_id: str | None = None
    correlation_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "operation": self.operation.value,
            "content_id": self.content_id,
            "text": self.text,
            "metadata": dict(self.metadata),
            "correlation_id": self.correlation_id,
        }


@dataclass(frozen=True)
class ServiceResult:
    """Réponse d'un service: texte transformé (optionnel) et métadonnées ajoutées."""

    text: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class ProcessingService(ABC):
    """Interface minimale d'un service de traitement.

    Attributs à définir:
      - name: identifiant stable (labels métriques, logs)
      - operations: opérations pour lesquelles le service s'applique
      - timeout: délai max (secondes), None pour le délai par défaut du coordinateur
      - required: si False, un échec est journalisé et ignoré

    `process` renvoie un `ServiceResult` ou lève `TransientProcessingError` /
    `PermanentProcessingError`. Toute autre exception est traitée comme transitoire.
    """

    name: str = "service"
    operations: frozenset[OperationKind] = ALL_OPERATIONS
    timeout: float | None = None
    required: bool = True

    def applies_to(self, operation: OperationKind) -> bool:
        """Indique si le service participe au fan-out pour cette opération."""
        return operation in self.operations

    @abstractmethod
    def process(self, request: ServiceRequest) -> ServiceResult:
        """Traite la requête et renvoie le résultat enrichi."""
        raise NotImplementedError

    def close(self) -> None:  # noqa: B027 - hook optionnel
        """Libère les ressources (clients HTTP...)."""
