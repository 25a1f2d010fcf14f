"""Enregistrement d'audit immuable (conformité)."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class AuditOperation(str, Enum):
    """Opérations tracées dans l'audit log."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    DEAD_LETTER = "DEAD_LETTER"
    REJECT = "REJECT"


@dataclass(frozen=True)
class AuditRecord:
    """
    Fait d'audit, écrit une seule fois et jamais rétracté.

    L'unicité porte sur (correlation_id, resource_id, operation).
    """

    correlation_id: str
    operation: AuditOperation
    resource_type: str
    resource_id: str
    actor: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    detail: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Forme sérialisable JSON (notification de conformité, API admin)."""
        return {
            "correlation_id": self.correlation_id,
            "operation": self.operation.value,
            "resource_type": self.resource_type,
            "resource_id": self.resource_id,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }
