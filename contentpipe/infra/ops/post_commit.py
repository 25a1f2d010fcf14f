"""Post-commit hooks: actions jouées uniquement après un commit effectif.

Ce module fournit des utilitaires pour déclencher des actions (signal d'invalidation
de cache, planification d'un retry, envoi de tâches Celery) uniquement après qu'une
transaction SQLAlchemy ait été effectivement commitée. Il évite de publier un signal
ou d'enqueuer un job si la transaction est rollback.
"""

from __future__ import annotations

import functools
from collections.abc import Callable

import structlog
from sqlalchemy import event
from sqlalchemy.orm import Session

from contentpipe.app.metrics import POSTCOMMIT_ACTIONS_TOTAL

_ACTIONS_KEY = "_post_commit_actions"

log = structlog.get_logger(__name__).bind(component="post_commit")


def _ensure_action_list(session: Session) -> list[Callable[[], None]]:
    """Ensure action list container exists on session.info and return it."""
    actions = session.info.get(_ACTIONS_KEY)
    if actions is None:
        actions = []
        session.info[_ACTIONS_KEY] = actions
        _bind_session_events(session)
    return actions


def _bind_session_events(session: Session) -> None:
    """Bind commit/rollback events once for the given session instance."""
    if session.info.get("_post_commit_bound"):
        return
    session.info["_post_commit_bound"] = True

    # Wrap rollback to always clear actions, even when SQLA doesn't fire events
    _orig_rollback = session.rollback

    def _wrapped_rollback(*args, **kwargs):  # type: ignore[no-untyped-def]
        try:
            return _orig_rollback(*args, **kwargs)
        finally:
            session.info[_ACTIONS_KEY] = []

    session.rollback = _wrapped_rollback  # type: ignore[method-assign]

    @event.listens_for(session, "after_commit")
    def _after_commit(_session: Session) -> None:
        actions = list(_session.info.get(_ACTIONS_KEY, []) or [])
        _session.info[_ACTIONS_KEY] = []
        for action in actions:
            # La transaction est déjà commitée: un échec ici est journalisé, pas remonté
            try:
                action()
                POSTCOMMIT_ACTIONS_TOTAL.labels(result="executed").inc()
            except Exception:
                POSTCOMMIT_ACTIONS_TOTAL.labels(result="error").inc()
                log.exception("post_commit_action_failed", action=repr(action))

    @event.listens_for(session, "after_rollback")
    def _after_rollback(_session: Session) -> None:
        # Purge les actions planifiées si la transaction est rollback
        if _session.info.get(_ACTIONS_KEY):
            POSTCOMMIT_ACTIONS_TOTAL.labels(result="rolled_back").inc()
        _session.info[_ACTIONS_KEY] = []


def register_action_after_commit(
    session: Session,
    func: Callable[..., None],
    *args,
    **kwargs,
) -> None:
    """Register an arbitrary callable to run after a successful commit.

    La fonction est stockée dans la session et exécutée lors de l'évènement
    `after_commit`. En cas de rollback, elle est oubliée.
    """
    bound = functools.partial(func, *args, **kwargs)
    _ensure_action_list(session).append(bound)


def enqueue_task_after_commit(
    session: Session,
    celery_app,
    task_name: str,
    *args,
    queue: str | None = None,
    countdown: float | None = None,
    **kwargs,
) -> None:
    """Enqueue a Celery task only after the current transaction commits.

    Args:
        session: Session SQLAlchemy concernée.
        celery_app: Application Celery utilisée pour `send_task`.
        task_name: Nom pleinement qualifié de la tâche (ex: "contentpipe.tasks.resume_envelope").
        args: Arguments positionnels de la tâche.
        queue: Nom de la queue cible (optionnel).
        countdown: Délai (secondes) avant exécution (optionnel).
        kwargs: Arguments nommés de la tâche.
    """

    def _send_task() -> None:
        opts: dict[str, object] = {}
        if queue:
            opts["queue"] = queue
        if countdown is not None:
            opts["countdown"] = countdown
        celery_app.send_task(task_name, args=args, kwargs=kwargs, **opts)

    register_action_after_commit(session, _send_task)


__all__ = [
    "enqueue_task_after_commit",
    "register_action_after_commit",
]
