from typing import Callable

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from settlement_engine.config import ReconciliationConfig, settings
from settlement_engine.database import SessionLocal, get_db
from settlement_engine.services.collaborators import Collaborators
from settlement_engine.services.scheduler import runner

_DB_DEP = Depends(get_db)

__all__ = [
    "get_db",
    "get_session_factory",
    "get_collaborators",
    "get_reconciliation_config",
    "get_actor",
]


def get_session_factory() -> Callable[[], Session]:
    """Batch runs open one session per record group, so they need the factory, not a session."""
    return SessionLocal


def get_collaborators() -> Collaborators:
    # Wired at startup by the deployment; tests override this dependency.
    return runner.collaborators


def get_reconciliation_config() -> ReconciliationConfig:
    return ReconciliationConfig.from_settings(settings)


def get_actor(x_actor: str | None = Header(default=None)) -> str | None:
    """Operator identity forwarded by the gateway in front of this service."""
    if x_actor is None:
        return None
    value = x_actor.strip()
    return value[:128] or None
