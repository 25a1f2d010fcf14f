"""Idempotency key helpers for inbound change envelopes.

- `make_idem_key("src1", "abc")` compose des clés lisibles et stables.
- `derive_idempotency_key(...)` dérive une clé canonique quand la source n'en fournit
  pas: empreinte SHA-256 du JSON canonique (clés triées, valeurs normalisées) de
  (source, opération, content_id, payload).

La déduplication elle-même est portée par l'Envelope Store (contrainte d'unicité
(source, clé)); ce module ne fait que construire les clés.
"""

from __future__ import annotations

import base64
import hashlib
import json
from datetime import UTC, datetime
from typing import Any


def make_idem_key(prefix: str, *parts: str) -> str:
    """Compose a stable idempotency key following `{prefix}:{part}:...` rule."""
    safe_parts = [str(p).replace("\n", " ").replace("\r", " ") for p in parts]
    suffix = ":".join(safe_parts) if safe_parts else ""
    return f"{prefix}:{suffix}" if suffix else prefix


def _normalize_for_json(value: Any) -> Any:
    """Normalize complex values for canonical JSON (bytes, sets, datetime)."""
    normalized: Any
    if isinstance(value, (bytes, bytearray)):
        normalized = base64.b64encode(bytes(value)).decode("ascii")
    elif isinstance(value, (set, frozenset)):
        normalized = sorted([_normalize_for_json(v) for v in value])
    elif isinstance(value, (list, tuple)):
        normalized = [_normalize_for_json(v) for v in value]
    elif isinstance(value, dict):
        normalized = {str(k): _normalize_for_json(v) for k, v in value.items()}
    elif isinstance(value, datetime):
        v = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        normalized = v.astimezone(UTC).isoformat()
    else:
        try:
            json.dumps(value)
            normalized = value
        except (TypeError, ValueError):
            normalized = str(value)
    return normalized


def canonical_json(value: Any) -> str:
    """Sérialisation JSON canonique (ordre des clés indifférent)."""
    return json.dumps(_normalize_for_json(value), sort_keys=True, separators=(",", ":"))


def derive_idempotency_key(
    source: str, operation: str, content_id: str | None, payload: dict[str, Any]
) -> str:
    """Dérive une clé d'idempotence déterministe pour une enveloppe sans clé."""
    raw = canonical_json(
        {
            "source": source,
            "operation": operation,
            "content_id": content_id,
            "payload": payload,
        }
    )
    digest = hashlib.sha256(raw.encode("utf-8")).hexdigest()
    return make_idem_key("derived", digest[:32])
