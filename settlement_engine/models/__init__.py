from settlement_engine.models.domain import (
    AGGREGATOR_SESSION_FLAG,
    DEAL_STAGE_ORDER,
    PROFORMA_AGGREGATE_FIELDS,
    AuditLog,
    CashPayment,
    CashPaymentEvent,
    CashPaymentStatus,
    CashRefund,
    Deal,
    DealStage,
    DealStageTransition,
    EntityLock,
    MatchStatus,
    Payment,
    PaymentDirection,
    PaymentScheduleState,
    PaymentSource,
    Proforma,
    ProformaStatus,
    ReconciliationRun,
    ReminderLog,
    ReviewStatus,
    ScheduleType,
    TransitionStatus,
)

__all__ = [
    "AGGREGATOR_SESSION_FLAG",
    "DEAL_STAGE_ORDER",
    "PROFORMA_AGGREGATE_FIELDS",
    "AuditLog",
    "CashPayment",
    "CashPaymentEvent",
    "CashPaymentStatus",
    "CashRefund",
    "Deal",
    "DealStage",
    "DealStageTransition",
    "EntityLock",
    "MatchStatus",
    "Payment",
    "PaymentDirection",
    "PaymentScheduleState",
    "PaymentSource",
    "Proforma",
    "ProformaStatus",
    "ReconciliationRun",
    "ReminderLog",
    "ReviewStatus",
    "ScheduleType",
    "TransitionStatus",
]
