"""
Modèle de gouvernance des contenus versionnés et de leurs métadonnées (POPO).

Ce module définit les objets domaine renvoyés par le Content Version Store: l'item
logique, ses versions immuables, l'arbre des catégories et les valeurs typées.
"""

# ============================================================
# Module : contentpipe/domain/content_version.py
# Objet  : Objets domaine du Content Version Store (POPO).
# ============================================================

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ContentState(str, Enum):
    """Cycle de vie d'un item (et statut d'une version)."""

    ACTIVE = "active"
    DELETED = "deleted"


class ValueKind(str, Enum):
    """Type déclaré par une catégorie pour ses valeurs."""

    TEXT = "text"
    NUMERIC = "numeric"
    TIMESTAMP = "timestamp"


@dataclass
class ContentItem:
    """
    Unité adressable, source de vérité.

    Attributs
    - content_id: identifiant immuable attribué au premier create.
    - current_version: numéro de la version courante.
    - state: active | deleted.
    """

    content_id: str
    current_version: int
    state: ContentState


@dataclass
class ContentVersion:
    """
    Snapshot immuable d'un contenu.

    Attributs
    - version_id: identifiant technique de la ligne.
    - content_id: référence arrière vers l'item.
    - version: numéro strictement croissant à partir de 1.
    - text: contenu textuel.
    - status: active | deleted.
    - created_at: horodatage de création.
    - author: identité système ou auteur.
    - metadata: valeurs typées par nom de catégorie.
    """

    version_id: int
    content_id: str
    version: int
    text: str
    status: ContentState
    created_at: datetime
    author: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class MetadataCategory:
    """Nœud de classification; `parent_id` None pour une racine."""

    category_id: int
    name: str
    value_kind: ValueKind
    description: str = ""
    parent_id: int | None = None


@dataclass(frozen=True)
class CommitResult:
    """Identité de la version écrite par un commit."""

    content_id: str
    version_id: int
    version: int
    created: bool = True
