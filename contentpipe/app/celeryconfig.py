"""Configuration centralisée Celery pour les tâches d'ingestion.

Les retries métier sont pilotés par le Retry manager (état en base), pas par Celery:
une tâche n'est jamais rejouée par `autoretry`, seulement redélivrée si le worker meurt.
"""

# ============================================================
# Module : contentpipe/app/celeryconfig.py
# Objet  : Configuration centralisée Celery (acks, timeouts).
# ============================================================

from __future__ import annotations

# Acquittement après exécution: redélivrance si le worker tombe
task_acks_late = True
task_reject_on_worker_lost = True
worker_prefetch_multiplier = 1
task_time_limit = 300  # secondes
broker_pool_limit = 10

task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"
task_ignore_result = True
