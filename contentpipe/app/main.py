"""
Application principale FastAPI.

Ce module assemble les composants HTTP du pipeline: ingress par source, surface
d'administration, santé et métriques.

Responsabilités du module:
- Initialiser le logging structuré et le tracing
- Construire (ou recevoir) le conteneur et gérer son cycle de vie (lifespan)
- Ajouter les middlewares (request id, métriques)
- Monter les routers
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from contentpipe.api.errors import install_error_handlers
from contentpipe.api.routes_admin import router as admin_router
from contentpipe.api.routes_contents import router as contents_router
from contentpipe.api.routes_health import router as health_router
from contentpipe.api.routes_ingest import router as ingest_router
from contentpipe.app.metrics import PrometheusMiddleware, metrics_router
from contentpipe.app.tracing import setup_tracing
from contentpipe.core.container import Container
from contentpipe.core.logging import setup_logging
from contentpipe.core.settings import get_settings
from contentpipe.middlewares.request_id import RequestIDMiddleware


def create_app(container: Container | None = None, start_workers: bool = True) -> FastAPI:
    """
    Construit et retourne l'application FastAPI prête à l'usage.

    Étapes:
    - Configure le logging structuré (structlog) et le tracing
    - Au démarrage: construit le conteneur si absent et lance les workers de drainage
    - À l'arrêt: ferme le conteneur qu'elle a construit

    Args:
        container: conteneur fourni (tests); sinon construit depuis `get_settings()`.
        start_workers: lance les workers par source dans le process API.
    """
    settings = container.settings if container is not None else get_settings()
    setup_logging(settings.LOG_LEVEL, json_logs=settings.LOG_JSON)
    setup_tracing(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = container is None
        app.state.container = container if container is not None else Container(settings)
        app.state.container.start(workers=start_workers)
        try:
            yield
        finally:
            if owned:
                app.state.container.close()
            else:
                app.state.container.workers.stop()

    app = FastAPI(title=settings.APP_NAME, debug=settings.APP_DEBUG, lifespan=lifespan)
    if container is not None:
        app.state.container = container
    install_error_handlers(app)
    app.add_middleware(PrometheusMiddleware)
    app.add_middleware(RequestIDMiddleware)
    app.include_router(health_router)
    app.include_router(ingest_router)
    app.include_router(admin_router)
    app.include_router(contents_router)
    app.include_router(metrics_router)
    return app
