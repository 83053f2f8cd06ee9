from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


class ReconciliationError(Exception):
    """Base class for every error raised by the reconciliation engine."""

    code = "RECONCILIATION_ERROR"


class ValidationError(ReconciliationError):
    """A raw record is missing a required field or carries an unparseable value.

    The record is skipped and logged; it is never stored with zeroed fields.
    """

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, *, field_name: str | None = None):
        super().__init__(message)
        self.field_name = field_name


class DuplicateError(ReconciliationError):
    code = "DUPLICATE"

    def __init__(self, message: str, *, existing_payment_id: int, tier: int, merged: bool = False):
        super().__init__(message)
        self.existing_payment_id = int(existing_payment_id)
        self.tier = int(tier)
        self.merged = bool(merged)


class MatchAmbiguousError(ReconciliationError):
    code = "MATCH_AMBIGUOUS"

    def __init__(self, message: str, *, candidate_ids: list[int]):
        super().__init__(message)
        self.candidate_ids = list(candidate_ids)


class ExternalServiceError(ReconciliationError):
    """A collaborator call still failed after the retry budget was spent."""

    code = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, message: str, *, service: str, attempts: int):
        super().__init__(message)
        self.service = service
        self.attempts = int(attempts)


class InvalidTransitionError(ReconciliationError):
    code = "INVALID_TRANSITION"


class NotFoundError(ReconciliationError):
    code = "NOT_FOUND"


@dataclass(frozen=True)
class ConsistencyWarning:
    """Detected inconsistency; reported and persisted, never auto-corrected."""

    kind: str  # schedule_drift | aggregate_mismatch | missing_fx_rate
    entity_type: str
    entity_id: int | None
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "message": self.message,
            "details": dict(self.details),
        }

    def log_extra(self) -> dict[str, Any]:
        # "message" is a reserved LogRecord attribute.
        return {
            "kind": self.kind,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "warning": self.message,
        }
