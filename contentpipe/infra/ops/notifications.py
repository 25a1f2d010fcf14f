# ============================================================
# Module : contentpipe/infra/ops/notifications.py
# Objet  : Signaux sortants best-effort (conformité, invalidation cache).
# Contexte : Les consommateurs sont externes; un échec est journalisé et compté,
#            jamais remonté au pipeline.
# ============================================================

from __future__ import annotations

import json
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

import httpx
import redis
import structlog

from contentpipe.app.metrics import CACHE_INVALIDATIONS_TOTAL, COMPLIANCE_NOTIFICATIONS_TOTAL
from contentpipe.domain.audit import AuditRecord
from contentpipe.domain.content_version import CommitResult
from contentpipe.domain.envelope import OperationKind


class ComplianceNotifier:
    """Client de notification de conformité (POST JSON vers un webhook).

    Les envois partent sur un petit pool de threads: `notify` ne bloque pas l'appelant.
    Une seule tentative par notification; l'échec est journalisé.
    """

    def __init__(
        self,
        url: str | None,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
        max_workers: int = 2,
    ) -> None:
        self.url = (url or "").strip()
        self._log = structlog.get_logger(__name__).bind(component="compliance_notifier")
        if client is None:
            timeout_cfg = httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)
            client = httpx.Client(
                headers={"Content-Type": "application/json"}, timeout=timeout_cfg
            )
        self._client = client
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="compliance")

    def notify(self, record: AuditRecord) -> Future | None:
        """Planifie l'envoi; renvoie le Future (utile aux tests) ou None si désactivé."""
        if not self.url:
            COMPLIANCE_NOTIFICATIONS_TOTAL.labels(result="skipped").inc()
            self._log.info("compliance_notification_skipped", resource_id=record.resource_id)
            return None
        return self._executor.submit(self._deliver, record.to_dict())

    def _deliver(self, body: dict[str, Any]) -> bool:
        try:
            resp = self._client.post(self.url, json={"type": "content.deleted", "audit": body})
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            COMPLIANCE_NOTIFICATIONS_TOTAL.labels(result="error").inc()
            self._log.warning(
                "compliance_notification_failed",
                resource_id=body.get("resource_id"),
                error=type(exc).__name__,
            )
            return False
        COMPLIANCE_NOTIFICATIONS_TOTAL.labels(result="delivered").inc()
        return True

    def close(self) -> None:
        self._executor.shutdown(wait=True)
        self._client.close()


class CacheInvalidationPublisher:
    """Émet `{content_id, version_id, version}` après chaque commit.

    Publie sur un canal Redis si `redis_url` est fourni, et notifie toujours les
    abonnés in-process (tests, cache local).
    """

    def __init__(self, redis_url: str | None = None, channel: str = "content:invalidate"):
        self.channel = channel
        self._subscribers: list[Callable[[dict[str, Any]], None]] = []
        self._client = redis.Redis.from_url(redis_url, decode_responses=True) if redis_url else None
        self._log = structlog.get_logger(__name__).bind(component="cache_invalidation")

    def subscribe(self, callback: Callable[[dict[str, Any]], None]) -> None:
        self._subscribers.append(callback)

    def publish(self, result: CommitResult, operation: OperationKind) -> None:
        """Callback de commit du Content Version Store."""
        if not result.created:
            return
        message = {
            "content_id": result.content_id,
            "version_id": result.version_id,
            "version": result.version,
            "operation": OperationKind(operation).value,
        }
        if self._client is not None:
            try:
                self._client.publish(self.channel, json.dumps(message))
            except redis.RedisError as exc:
                CACHE_INVALIDATIONS_TOTAL.labels(result="error").inc()
                self._log.warning(
                    "cache_invalidation_failed",
                    content_id=result.content_id,
                    error=type(exc).__name__,
                )
        for callback in self._subscribers:
            callback(message)
        CACHE_INVALIDATIONS_TOTAL.labels(result="emitted").inc()

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
