from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool

from .models import (
    LedgerHistoryResponse,
    PaymentEventResult,
    SettlePurchaseRequest,
    SettlementResult,
    UserBalance,
)
from .service import LedgerService, LedgerServiceError
from .settlement import PaymentSettlementGuard, WebhookNotConfiguredError

router = APIRouter()


def get_ledger_service(request: Request) -> LedgerService:
    return request.app.state.services.ledger


def get_settlement_guard(request: Request) -> PaymentSettlementGuard:
    return request.app.state.services.settlement


def http_error(status_code: int, error: Exception) -> HTTPException:
    code = getattr(error, "code", "error")
    return HTTPException(status_code=status_code, detail={"error": code, "detail": str(error)})


@router.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: str, ledger: LedgerService = Depends(get_ledger_service)) -> UserBalance:
    return ledger.get_balance(user_id)


@router.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(
    user_id: str,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    ledger: LedgerService = Depends(get_ledger_service),
) -> LedgerHistoryResponse:
    return ledger.get_ledger_history(user_id, limit, offset)


@router.post("/payments/settle", response_model=SettlementResult, tags=["Payments"])
def settle_purchase(
    request: SettlePurchaseRequest,
    guard: PaymentSettlementGuard = Depends(get_settlement_guard),
) -> SettlementResult:
    try:
        return guard.settle_purchase(
            request.user_id, request.external_ref, request.amount, request.currency, request.metadata
        )
    except LedgerServiceError as e:
        raise http_error(status.HTTP_400_BAD_REQUEST, e)


@router.post("/payments/webhook", tags=["Payments"])
async def payment_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None),
    guard: PaymentSettlementGuard = Depends(get_settlement_guard),
):
    payload = await request.body()
    try:
        event = guard.verify_provider_event(payload, stripe_signature)
        result: PaymentEventResult = await run_in_threadpool(guard.handle_provider_event, event)
    except WebhookNotConfiguredError as e:
        raise http_error(status.HTTP_500_INTERNAL_SERVER_ERROR, e)
    except LedgerServiceError as e:
        raise http_error(status.HTTP_400_BAD_REQUEST, e)
    return {"received": True, "result": result.model_dump(mode="json")}
