# ============================================================
# Module : contentpipe/infra/processing/http_service.py
# Objet  : Adaptateur HTTP vers un service de traitement externe.
# Contexte : traduction, accessibilité... sont des boîtes noires; seul le contrat
#            requête/réponse et la classification des échecs sont définis ici.
# ============================================================

from __future__ import annotations

import os
from collections.abc import Iterable

import httpx
import structlog

from ...core.constants import (
    HTTP_STATUS_CLIENT_ERROR_MAX,
    HTTP_STATUS_CLIENT_ERROR_MIN,
    HTTP_STATUS_REQUEST_TIMEOUT,
    HTTP_STATUS_TOO_MANY_REQUESTS,
)
from ...domain.envelope import OperationKind
from ...domain.errors import PermanentProcessingError, TransientProcessingError
from ...domain.processing import ProcessingService, ServiceRequest, ServiceResult

_TRANSIENT_CLIENT_CODES = {HTTP_STATUS_REQUEST_TIMEOUT, HTTP_STATUS_TOO_MANY_REQUESTS}


class HttpProcessingService(ProcessingService):
    """Service de traitement joint en HTTP (POST JSON).

    Contrat:
      - requête: `{operation, content_id, text, metadata, correlation_id}`
      - 2xx: `{text?, metadata?}`
      - 2xx/4xx/5xx avec `{"failure": "permanent"|"transient", "reason": ...}`: échec classé
      - 408/429/5xx, erreur réseau ou timeout: transitoire
      - autre 4xx: permanent

    Variables d'environnement: `{NAME}_API_KEY` (Bearer) si présente.
    """

    def __init__(
        self,
        name: str,
        url: str,
        operations: Iterable[OperationKind | str] | None = None,
        timeout: float | None = None,
        required: bool = True,
        client: httpx.Client | None = None,
    ) -> None:
        self.name = name
        self.url = url
        if operations is not None:
            self.operations = frozenset(OperationKind(op) for op in operations)
        self.timeout = timeout
        self.required = required
        self._log = structlog.get_logger(__name__).bind(component="http_service", service=name)
        if client is None:
            headers: dict[str, str] = {"Content-Type": "application/json"}
            api_key = os.getenv(f"{name.upper()}_API_KEY") or ""
            if api_key:
                headers["Authorization"] = f"Bearer {api_key}"
            t = timeout or 10.0
            client = httpx.Client(
                headers=headers,
                timeout=httpx.Timeout(connect=min(t, 5.0), read=t, write=t, pool=t),
                limits=httpx.Limits(max_keepalive_connections=20, max_connections=50),
            )
        self._client = client

    def process(self, request: ServiceRequest) -> ServiceResult:
        try:
            resp = self._client.post(self.url, json=request.to_dict())
        except httpx.TimeoutException as exc:
            raise TransientProcessingError(f"{self.name}: timeout", self.name) from exc
        except httpx.HTTPError as exc:
            raise TransientProcessingError(
                f"{self.name}: network error {type(exc).__name__}", self.name
            ) from exc

        body = self._json(resp)
        failure = body.get("failure") if isinstance(body, dict) else None
        if failure:
            reason = f"{self.name}: {body.get('reason') or failure}"
            if failure == "permanent":
                raise PermanentProcessingError(reason, self.name)
            raise TransientProcessingError(reason, self.name)
        if resp.status_code in _TRANSIENT_CLIENT_CODES or resp.status_code >= 500:
            raise TransientProcessingError(f"{self.name}: http {resp.status_code}", self.name)
        if HTTP_STATUS_CLIENT_ERROR_MIN <= resp.status_code < HTTP_STATUS_CLIENT_ERROR_MAX:
            raise PermanentProcessingError(f"{self.name}: http {resp.status_code}", self.name)

        text = body.get("text") if isinstance(body, dict) else None
        metadata = body.get("metadata") if isinstance(body, dict) else None
        return ServiceResult(
            text=text if isinstance(text, str) else None,
            metadata=dict(metadata) if isinstance(metadata, dict) else {},
        )

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        try:
            data = resp.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def close(self) -> None:
        self._client.close()
