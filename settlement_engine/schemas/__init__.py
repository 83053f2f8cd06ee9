from settlement_engine.schemas.ingest import (
    BankTransactionRow,
    CashConfirmation,
    GatewayEvent,
    GatewayRecord,
    IngestRecord,
    decode_gateway_event,
    decode_ingest_record,
)
from settlement_engine.schemas.reconciliation import (
    CashConfirmRequest,
    CashPaymentCreate,
    CashPaymentRead,
    CashRefundRead,
    CashRefundRequest,
    DealSettlementRead,
    DuplicateResolutionRequest,
    PaymentActionRequest,
    PaymentAssignRequest,
    PaymentRead,
    ProformaAggregatesRead,
    ProformaRecomputeRequest,
    ProformaVerifyResponse,
    ReconciliationReportRead,
    ReconciliationRunRequest,
    ReconciliationRunStatusResponse,
    RecordResultRead,
)

__all__ = [
    "BankTransactionRow",
    "CashConfirmRequest",
    "CashConfirmation",
    "CashPaymentCreate",
    "CashPaymentRead",
    "CashRefundRead",
    "CashRefundRequest",
    "DealSettlementRead",
    "DuplicateResolutionRequest",
    "GatewayEvent",
    "GatewayRecord",
    "IngestRecord",
    "PaymentActionRequest",
    "PaymentAssignRequest",
    "PaymentRead",
    "ProformaAggregatesRead",
    "ProformaRecomputeRequest",
    "ProformaVerifyResponse",
    "ReconciliationReportRead",
    "ReconciliationRunRequest",
    "ReconciliationRunStatusResponse",
    "RecordResultRead",
    "decode_gateway_event",
    "decode_ingest_record",
]
