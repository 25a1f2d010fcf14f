"""
Conteneur d'injection de dépendances du pipeline.

Construit explicitement les composants (moteurs, stores, services, files, workers) à
partir d'un objet `Settings`. Aucun singleton de module: l'API, les workers Celery et
les tests créent chacun leur conteneur et le ferment à l'arrêt.
"""

from __future__ import annotations

import structlog

from contentpipe.core.settings import Settings, get_settings
from contentpipe.domain.processing import ProcessingService
from contentpipe.infra.ops.locks import KeyedLock
from contentpipe.infra.ops.notifications import CacheInvalidationPublisher, ComplianceNotifier
from contentpipe.infra.processing.registry import build_services
from contentpipe.infra.queue.source_queues import (
    InMemorySourceQueues,
    RedisSourceQueues,
    SourceQueues,
)
from contentpipe.infra.repo.audit_repo import AuditLog
from contentpipe.infra.repo.category_repo import CategoryRepo
from contentpipe.infra.repo.content_version_repo import ContentVersionStore
from contentpipe.infra.repo.db import get_engine, get_session_factory
from contentpipe.infra.repo.envelope_repo import EnvelopeStore
from contentpipe.infra.repo.models import AuditBase, Base
from contentpipe.services.coordinator import ProcessingCoordinator
from contentpipe.services.pipeline import IngestionPipeline, WorkerPool
from contentpipe.services.retry_manager import (
    BackoffPolicy,
    CeleryRetryScheduler,
    RetryManager,
    RetryScheduler,
    ThreadRetryScheduler,
)


class Container:
    """Contexte applicatif: tout ce qu'un process du pipeline partage.

    Args:
        settings: configuration (défaut: `get_settings()`).
        services: services de traitement (défaut: construits depuis la configuration).
        queues: backend de files (défaut: selon `QUEUE_BACKEND`).
        scheduler: planificateur de retry (défaut: selon `RETRY_SCHEDULER`).
        create_schema: crée les tables au démarrage (SQLite/dev); en prod: Alembic.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        services: list[ProcessingService] | None = None,
        queues: SourceQueues | None = None,
        scheduler: RetryScheduler | None = None,
        create_schema: bool = True,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        self._log = structlog.get_logger(__name__).bind(component="container")

        # Stockage: le contenu et l'audit ont chacun leur moteur
        self.engine = get_engine(s.DATABASE_URL)
        self.audit_engine = (
            get_engine(s.AUDIT_DATABASE_URL) if s.AUDIT_DATABASE_URL else get_engine(s.DATABASE_URL)
        )
        if create_schema:
            Base.metadata.create_all(self.engine)
            AuditBase.metadata.create_all(self.audit_engine)
        self.session_factory = get_session_factory(self.engine)
        self.audit_session_factory = get_session_factory(self.audit_engine)

        # Collaborateurs externes
        self.compliance = ComplianceNotifier(
            s.COMPLIANCE_WEBHOOK_URL, timeout=s.COMPLIANCE_TIMEOUT_S
        )
        self.cache_signal = CacheInvalidationPublisher(
            redis_url=s.REDIS_URL if s.QUEUE_BACKEND == "redis" else None,
            channel=s.CACHE_INVALIDATION_CHANNEL,
        )

        # Stores
        self.locks = KeyedLock()
        self.categories = CategoryRepo(self.session_factory)
        self.content = ContentVersionStore(
            self.session_factory, categories=self.categories, locks=self.locks
        )
        self.content.add_commit_listener(self.cache_signal.publish)
        self.envelopes = EnvelopeStore(self.session_factory)
        self.audit = AuditLog(self.audit_session_factory, notifier=self.compliance)

        # Files par source
        if queues is not None:
            self.queues = queues
        elif s.QUEUE_BACKEND == "redis":
            self.queues = RedisSourceQueues(url=s.REDIS_URL)
        else:
            self.queues = InMemorySourceQueues()

        # Traitement et retries
        self.services = services if services is not None else build_services(s)
        self.coordinator = ProcessingCoordinator(
            self.services,
            self.content,
            self.audit,
            actor=s.SYSTEM_ACTOR,
            max_workers=s.FANOUT_MAX_WORKERS,
            default_timeout=s.SERVICE_TIMEOUT_S,
        )
        self.scheduler = scheduler or self._build_scheduler()
        self.retries = RetryManager(
            self.envelopes,
            self.audit,
            self.scheduler,
            policy=BackoffPolicy(
                max_attempts=s.RETRY_MAX_ATTEMPTS,
                base_delay=s.RETRY_BASE_DELAY_S,
                max_delay=s.RETRY_MAX_DELAY_S,
                jitter=s.RETRY_JITTER,
            ),
            actor=s.SYSTEM_ACTOR,
        )
        self.pipeline = IngestionPipeline(
            self.envelopes,
            self.audit,
            self.coordinator,
            self.retries,
            actor=s.SYSTEM_ACTOR,
            processing_lease=s.PROCESSING_LEASE_S,
        )
        self.workers = WorkerPool(
            self.queues, self.pipeline, s.INGEST_SOURCES, poll_timeout=s.QUEUE_POLL_TIMEOUT_S
        )
        self._closed = False

    def _build_scheduler(self) -> RetryScheduler:
        if self.settings.RETRY_SCHEDULER == "celery":
            from contentpipe.app.celery_app import celery_app  # import local: évite le cycle

            return CeleryRetryScheduler(celery_app)
        return ThreadRetryScheduler(self.queues.put)

    def start(self, workers: bool = True, recover: bool = True) -> None:
        """Démarre les workers de drainage (un par source), après la reprise au démarrage."""
        if recover:
            self.recover()
        if workers:
            self.workers.start()
        self._log.info(
            "container_started",
            queue_backend=self.settings.QUEUE_BACKEND,
            scheduler=self.settings.RETRY_SCHEDULER,
            services=[svc.name for svc in self.services],
        )

    def recover(self) -> dict[str, int]:
        """Reprise après redémarrage.

        Les messages restés en vol dans Redis retournent en tête de leur file, puis les
        enveloppes non terminales sans message porteur sont replanifiées.
        """
        requeued = 0
        if isinstance(self.queues, RedisSourceQueues):
            for source in self.settings.INGEST_SOURCES:
                requeued += self.queues.recover_inflight(source)
        counts = self.pipeline.recover()
        self._log.info("container_recovered", inflight_requeued=requeued, **counts)
        return {"inflight_requeued": requeued, **counts}

    def close(self) -> None:
        """Arrête les workers puis libère les ressources, dans l'ordre inverse."""
        if self._closed:
            return
        self._closed = True
        self.workers.stop()
        self.pipeline.close()
        self.queues.close()
        self.compliance.close()
        self.cache_signal.close()
        self.engine.dispose()
        self.audit_engine.dispose()
        self._log.info("container_closed")

    def __enter__(self) -> Container:
        return self

    def __exit__(self, *exc) -> None:
        self.close()
