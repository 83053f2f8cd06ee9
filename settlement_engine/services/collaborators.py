"""
Narrow interfaces to the systems the engine talks to but does not implement.

Real integrations (CRM, payment gateway, accounting, bank file parsing,
notification transport, FX market data) live outside this package; tests
provide in-memory doubles.
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Protocol, TypeVar

from settlement_engine.config import ReconciliationConfig
from settlement_engine.services.errors import ExternalServiceError, ReconciliationError

logger = logging.getLogger("settlement.collaborators")

T = TypeVar("T")


class BankImportCollaborator(Protocol):
    def fetch_rows(self) -> Iterable[dict[str, Any]]: ...


class PaymentGatewayCollaborator(Protocol):
    def fetch_events(self) -> Iterable[dict[str, Any]]: ...


class AccountingSystemCollaborator(Protocol):
    def get_proforma(self, fullnumber: str) -> Optional[dict[str, Any]]: ...

    def list_proformas(self, deal_id: int) -> list[dict[str, Any]]: ...


class CRMCollaborator(Protocol):
    def get_deal(self, deal_id: int) -> Optional[dict[str, Any]]: ...

    def update_deal_stage(self, deal_id: int, stage_id: int) -> None: ...


class NotificationCollaborator(Protocol):
    def send(self, deal_id: int, template: str, payload: dict[str, Any]) -> None: ...


class FXRateCollaborator(Protocol):
    def get_rate(self, from_currency: str, to_currency: str, as_of: date) -> Optional[Decimal]: ...


@dataclass
class Collaborators:
    crm: Optional[CRMCollaborator] = None
    notifier: Optional[NotificationCollaborator] = None
    fx: Optional[FXRateCollaborator] = None
    accounting: Optional[AccountingSystemCollaborator] = None
    bank: Optional[BankImportCollaborator] = None
    gateway: Optional[PaymentGatewayCollaborator] = None


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 4
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 8.0

    @classmethod
    def from_config(cls, config: ReconciliationConfig) -> "RetryPolicy":
        return cls(
            attempts=max(1, int(config.external_retry_attempts)),
            base_delay_seconds=float(config.external_retry_base_delay_seconds),
            max_delay_seconds=float(config.external_retry_max_delay_seconds),
        )

    def delay_for(self, attempt_index: int) -> float:
        # Exponential backoff capped at max delay, with full jitter.
        ceiling = min(self.max_delay_seconds, self.base_delay_seconds * (2**attempt_index))
        return random.uniform(0.0, max(0.0, ceiling))


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    service: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """Call a collaborator with bounded exponential backoff.

    Engine errors (ReconciliationError) are not retried. Any other exception is
    retried until the budget is spent, then wrapped in ExternalServiceError.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, int(policy.attempts))
    last_exc: Exception | None = None

    for attempt_index in range(attempts):
        try:
            return fn(*args, **kwargs)
        except ReconciliationError:
            raise
        except Exception as exc:
            last_exc = exc
            logger.warning(
                "external_call_failed",
                extra={
                    "service": service,
                    "attempt": attempt_index + 1,
                    "max_attempts": attempts,
                    "error": str(exc),
                },
            )
            if attempt_index + 1 < attempts:
                sleep(policy.delay_for(attempt_index))

    raise ExternalServiceError(
        f"{service} call failed after {attempts} attempts: {last_exc}",
        service=service,
        attempts=attempts,
    ) from last_exc
