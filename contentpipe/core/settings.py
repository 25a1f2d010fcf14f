"""Définition et chargement des paramètres de configuration du pipeline.

Objectif du module
------------------
- Centraliser les paramètres (env/.env) via Pydantic Settings
- Résoudre le fichier `.env` à utiliser selon la stratégie: ENV_FILE > .env.{APP_ENV} > .env
"""

import os
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

# Détermination du fichier .env à utiliser avec priorité:
# 1) ENV_FILE (chemin explicite)
# 2) .env.{APP_ENV} si présent
# 3) .env (défaut)
_cwd = Path.cwd()
_env_file_from_env = os.getenv("ENV_FILE")
if _env_file_from_env:
    _ENV_FILE_PATH = _env_file_from_env
else:
    _app_env = os.getenv("APP_ENV", "dev")
    _candidate_specific = _cwd / f".env.{_app_env}"
    _candidate_default = _cwd / ".env"
    if _candidate_specific.exists():
        _ENV_FILE_PATH = _candidate_specific
    else:
        _ENV_FILE_PATH = _candidate_default


class Settings(BaseSettings):
    """Modèle de configuration chargé depuis l'environnement et .env."""

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE_PATH,
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
    )
    APP_NAME: str = "contentpipe"
    APP_ENV: str = "dev"
    APP_DEBUG: bool = False
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    # Stockage: contenu/enveloppes et audit (moteur indépendant si renseigné)
    DATABASE_URL: str = "sqlite+pysqlite:///./contentpipe.db"
    AUDIT_DATABASE_URL: str | None = None

    # Files d'ingestion: "memory" | "redis"
    QUEUE_BACKEND: str = "memory"
    REDIS_URL: str | None = None
    INGEST_SOURCES: list[str] = ["default"]
    QUEUE_POLL_TIMEOUT_S: float = 1.0

    # Planification des retries: "thread" | "celery"
    RETRY_SCHEDULER: str = "thread"
    CELERY_BROKER_URL: str = "redis://redis:6379/0"
    CELERY_RESULT_BACKEND: str = "redis://redis:6379/1"

    # Politique de retry
    RETRY_MAX_ATTEMPTS: int = 5
    RETRY_BASE_DELAY_S: float = 1.0
    RETRY_MAX_DELAY_S: float = 300.0
    RETRY_JITTER: bool = True
    # Une tentative `processing` plus ancienne est considérée abandonnée (crash worker)
    PROCESSING_LEASE_S: float = 300.0

    # Fan-out vers les services de traitement
    FANOUT_MAX_WORKERS: int = 16
    SERVICE_TIMEOUT_S: float = 10.0
    # JSON: [{"name": "translation", "url": "...", "operations": ["create", "update"]}]
    PROCESSING_SERVICES_JSON: str = "[]"
    VALIDATION_ENABLED: bool = True
    VALIDATION_MAX_TEXT_LEN: int = 1_000_000

    # Collaborateurs externes
    COMPLIANCE_WEBHOOK_URL: str | None = None
    COMPLIANCE_TIMEOUT_S: float = 5.0
    CACHE_INVALIDATION_CHANNEL: str = "content:invalidate"
    OTLP_ENDPOINT: str | None = None

    # Identité système inscrite sur les versions et l'audit
    SYSTEM_ACTOR: str = "contentpipe"


def get_settings() -> Settings:
    """Construit et retourne la configuration de l'application."""
    return Settings()
