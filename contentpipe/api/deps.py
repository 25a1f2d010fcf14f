"""Dépendances partagées pour les routes de l'API.

Le conteneur est construit au démarrage de l'application (lifespan) et rangé dans
`app.state.container`; les routes le reçoivent par injection FastAPI.
"""

from fastapi import Request

from contentpipe.core.container import Container


def get_container(request: Request) -> Container:
    """Retourne le conteneur de l'application courante."""
    return request.app.state.container
