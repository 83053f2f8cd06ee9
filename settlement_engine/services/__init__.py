from settlement_engine.services.audit import audit_event
from settlement_engine.services.errors import (
    ConsistencyWarning,
    DuplicateError,
    ExternalServiceError,
    InvalidTransitionError,
    MatchAmbiguousError,
    ReconciliationError,
    ValidationError,
)

__all__ = [
    "audit_event",
    "ConsistencyWarning",
    "DuplicateError",
    "ExternalServiceError",
    "InvalidTransitionError",
    "MatchAmbiguousError",
    "ReconciliationError",
    "ValidationError",
]
