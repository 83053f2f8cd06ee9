from fastapi import APIRouter

from settlement_engine.api.routes import (
    cash_payments,
    deals,
    gateway,
    health,
    payments,
    proformas,
    reconciliation,
)

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(reconciliation.router)
api_router.include_router(gateway.router)
api_router.include_router(payments.router)
api_router.include_router(cash_payments.router)
api_router.include_router(proformas.router)
api_router.include_router(deals.router)
