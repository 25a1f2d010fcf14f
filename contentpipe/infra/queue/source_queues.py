"""Files d'ingestion par source (Redis ou in-memory).

Chaque source dispose de sa propre file, drainée indépendamment: une source lente ou
en échec ne bloque pas les autres. Un message reçu est déplacé dans une liste
« in-flight » et n'en sort qu'à l'acquittement (`ack`), c'est-à-dire après
l'enregistrement d'un résultat terminal ou d'un retry planifié. `nack` le remet en
tête de file.

Clés Redis:
    ingest:queue:{source}     file d'attente (RPUSH / LMOVE LEFT->RIGHT)
    ingest:inflight:{source}  messages reçus non acquittés
"""

from __future__ import annotations

import json
import queue as _queue
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import redis

from contentpipe.app.metrics import QUEUE_DEPTH
from contentpipe.core.constants import INFLIGHT_KEY_PREFIX, QUEUE_KEY_PREFIX


@dataclass(frozen=True)
class Delivery:
    """Message reçu d'une file, à acquitter."""

    source: str
    message: dict[str, Any]
    raw: str


class SourceQueues(ABC):
    """Interface commune des backends de files par source."""

    @abstractmethod
    def put(self, source: str, message: dict[str, Any]) -> None:
        """Ajoute un message en fin de file."""

    @abstractmethod
    def get(self, source: str, timeout: float = 1.0) -> Delivery | None:
        """Attend un message (None à l'expiration du délai)."""

    @abstractmethod
    def ack(self, delivery: Delivery) -> None:
        """Acquitte définitivement un message reçu."""

    @abstractmethod
    def nack(self, delivery: Delivery) -> None:
        """Remet un message reçu en tête de file."""

    @abstractmethod
    def depth(self, source: str) -> int:
        """Nombre de messages en attente."""

    def close(self) -> None:  # noqa: B027 - hook optionnel
        """Libère les connexions."""


class InMemorySourceQueues(SourceQueues):
    """Backend in-process (tests, déploiement mono-process)."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._queues: dict[str, _queue.Queue[str]] = {}
        self._inflight: dict[str, list[str]] = {}

    def _q(self, source: str) -> _queue.Queue[str]:
        with self._lock:
            if source not in self._queues:
                self._queues[source] = _queue.Queue()
                self._inflight[source] = []
            return self._queues[source]

    def put(self, source: str, message: dict[str, Any]) -> None:
        self._q(source).put(json.dumps(message))
        QUEUE_DEPTH.labels(source=source).set(self.depth(source))

    def get(self, source: str, timeout: float = 1.0) -> Delivery | None:
        try:
            raw = self._q(source).get(timeout=timeout)
        except _queue.Empty:
            return None
        with self._lock:
            self._inflight[source].append(raw)
        QUEUE_DEPTH.labels(source=source).set(self.depth(source))
        return Delivery(source=source, message=json.loads(raw), raw=raw)

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            inflight = self._inflight.get(delivery.source, [])
            if delivery.raw in inflight:
                inflight.remove(delivery.raw)

    def nack(self, delivery: Delivery) -> None:
        self.ack(delivery)
        q = self._q(delivery.source)
        # Remise en tête pour préserver l'ordre intra-source
        with q.mutex:
            q.queue.appendleft(delivery.raw)
            q.unfinished_tasks += 1
            q.not_empty.notify()

    def depth(self, source: str) -> int:
        return self._q(source).qsize()

    def inflight(self, source: str) -> list[dict[str, Any]]:
        with self._lock:
            return [json.loads(r) for r in self._inflight.get(source, [])]


class RedisSourceQueues(SourceQueues):
    """Backend Redis (listes), partagé entre process/API et workers."""

    def __init__(self, url: str | None = None, client: Any | None = None) -> None:
        if client is None:
            if not url:
                raise ValueError("REDIS_URL is required for the redis queue backend")
            client = redis.Redis.from_url(url, decode_responses=True)
        self.client = client

    @staticmethod
    def _queue_key(source: str) -> str:
        return f"{QUEUE_KEY_PREFIX}:{source}"

    @staticmethod
    def _inflight_key(source: str) -> str:
        return f"{INFLIGHT_KEY_PREFIX}:{source}"

    def put(self, source: str, message: dict[str, Any]) -> None:
        self.client.rpush(self._queue_key(source), json.dumps(message))
        QUEUE_DEPTH.labels(source=source).set(self.depth(source))

    def get(self, source: str, timeout: float = 1.0) -> Delivery | None:
        raw = self.client.blmove(
            self._queue_key(source), self._inflight_key(source), timeout, "LEFT", "RIGHT"
        )
        if raw is None:
            return None
        return Delivery(source=source, message=json.loads(raw), raw=raw)

    def ack(self, delivery: Delivery) -> None:
        self.client.lrem(self._inflight_key(delivery.source), 1, delivery.raw)

    def nack(self, delivery: Delivery) -> None:
        pipe = self.client.pipeline()
        pipe.lrem(self._inflight_key(delivery.source), 1, delivery.raw)
        pipe.lpush(self._queue_key(delivery.source), delivery.raw)
        pipe.execute()

    def depth(self, source: str) -> int:
        return int(self.client.llen(self._queue_key(source)))

    def recover_inflight(self, source: str) -> int:
        """Remet en file les messages in-flight orphelins (worker tombé avant ack)."""
        moved = 0
        while self.client.lmove(
            self._inflight_key(source), self._queue_key(source), "RIGHT", "LEFT"
        ):
            moved += 1
        return moved

    def close(self) -> None:
        self.client.close()
