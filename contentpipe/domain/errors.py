"""Taxonomie des erreurs du pipeline d'ingestion.

Les erreurs de traitement sont classées `transient` (rejouables selon la politique de
backoff) ou `permanent` (envoyées directement en dead-letter). Les doublons ne sont pas
des erreurs et n'apparaissent donc pas ici.
"""

from __future__ import annotations


class ContentPipeError(Exception):
    """Base de toutes les erreurs métier du pipeline."""


class EnvelopeValidationError(ContentPipeError):
    """Enveloppe malformée: rejetée immédiatement, jamais mise en traitement."""


class ProcessingError(ContentPipeError):
    """Échec d'un service de traitement ou du commit, classé par `kind`."""

    kind = "transient"

    def __init__(self, reason: str, service: str | None = None) -> None:
        """Conserve la raison lisible et le service à l'origine de l'échec."""
        super().__init__(reason)
        self.reason = reason
        self.service = service


class TransientProcessingError(ProcessingError):
    """Timeout, erreur réseau, contention de verrou: rejouable."""

    kind = "transient"


class PermanentProcessingError(ProcessingError):
    """Contenu invalide ou payload rejeté par un service: pas de retry."""

    kind = "permanent"


class ContentNotFoundError(PermanentProcessingError):
    """L'identifiant de contenu ciblé n'existe pas."""


class ContentDeletedError(PermanentProcessingError):
    """Mise à jour ou suppression d'un contenu déjà supprimé logiquement."""


class MetadataError(PermanentProcessingError):
    """Catégorie inconnue ou valeur non convertible dans le type déclaré."""


class VersionConflictError(TransientProcessingError):
    """Course sur l'allocation de numéro de version (retry optimiste épuisé)."""


class CategoryError(ContentPipeError):
    """Violation des invariants de l'arbre de catégories."""


class CategoryCycleError(CategoryError):
    """Le rattachement demandé créerait un cycle."""


class CategoryInUseError(CategoryError):
    """Suppression refusée: des valeurs de métadonnées référencent la catégorie."""


class EnvelopeNotFoundError(ContentPipeError):
    """Aucune enveloppe connue pour (source, clé d'idempotence)."""


class InvalidTransitionError(ContentPipeError):
    """Transition d'état refusée par la machine à états de l'enveloppe."""
