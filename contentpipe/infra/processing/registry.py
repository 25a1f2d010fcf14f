"""Construction des services de traitement depuis la configuration."""

from __future__ import annotations

import json

from ...core.settings import Settings
from ...domain.processing import ProcessingService
from .http_service import HttpProcessingService
from .validation_service import RuleValidationService


def parse_service_specs(raw: str) -> list[dict]:
    """Parse `PROCESSING_SERVICES_JSON` (liste d'objets); lève ValueError si invalide."""
    data = json.loads(raw or "[]")
    if not isinstance(data, list):
        raise ValueError("PROCESSING_SERVICES_JSON must be a JSON array")
    specs: list[dict] = []
    for item in data:
        if not isinstance(item, dict) or not item.get("name") or not item.get("url"):
            raise ValueError(f"invalid processing service declaration: {item!r}")
        specs.append(item)
    return specs


def build_services(settings: Settings) -> list[ProcessingService]:
    """Services configurés, dans l'ordre de fusion (validation locale en premier)."""
    services: list[ProcessingService] = []
    if settings.VALIDATION_ENABLED:
        services.append(RuleValidationService(max_text_len=settings.VALIDATION_MAX_TEXT_LEN))
    for spec in parse_service_specs(settings.PROCESSING_SERVICES_JSON):
        services.append(
            HttpProcessingService(
                name=spec["name"],
                url=spec["url"],
                operations=spec.get("operations"),
                timeout=spec.get("timeout", settings.SERVICE_TIMEOUT_S),
                required=bool(spec.get("required", True)),
            )
        )
    return services
