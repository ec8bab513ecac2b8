"""
Payments API routes.

Keep this thin: identifiers are parsed at the boundary, everything else lives
in the application services.
"""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import (
    get_payment_service,
    get_reconciler,
    payment_lookup,
    provider_reference,
    rate_limit,
)
from application.dtos.payments import CreatePaymentRequest, RefundPaymentRequest
from application.services.payment_service import (
    DEFAULT_HISTORY_LIMIT,
    MAX_HISTORY_LIMIT,
    PaymentApplicationService,
)
from application.services.reconciliation_service import PaymentStatusReconciler
from core.response import success_response
from domain.payment.identifiers import PaymentLookup, ProviderReference


router = APIRouter(prefix="/payments", tags=["Payments"])
users_router = APIRouter(prefix="/users", tags=["Payments"])


@router.post("", summary="Create payment", dependencies=[Depends(rate_limit("create"))])
async def create_payment(
    payload: CreatePaymentRequest,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.create_payment(payload)
    if result.already_paid:
        message = "Payment already active"
    elif result.existing:
        message = "Existing payment returned"
    else:
        message = "Payment created"
    return success_response(data=result.model_dump(mode="json"), message=message)


@router.get("/pricing", summary="Current pricing", dependencies=[Depends(rate_limit())])
async def get_pricing(
    currency: Optional[str] = Query(default=None, min_length=3, max_length=3),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    pricing = await service.get_current_pricing(currency)
    return success_response(data=pricing.model_dump(mode="json"))


@router.get("/{payment_id}", summary="Payment status", dependencies=[Depends(rate_limit())])
async def get_payment_status(
    lookup: PaymentLookup = Depends(payment_lookup),
    reconciler: PaymentStatusReconciler = Depends(get_reconciler),
):
    view = await reconciler.get_status(lookup)
    message = "Payment status has changed" if view.status_changed else "Success"
    return success_response(data=view.model_dump(mode="json", exclude_none=True), message=message)


@router.get(
    "/{payment_intent_id}/status-change",
    summary="Consume pending status change",
    dependencies=[Depends(rate_limit())],
)
async def check_status_change(
    reference: ProviderReference = Depends(provider_reference),
    reconciler: PaymentStatusReconciler = Depends(get_reconciler),
):
    view = await reconciler.check_status_change(reference)
    return success_response(data=view.model_dump(mode="json"))


@router.post("/{payment_id}/refresh", summary="Refresh status from provider", dependencies=[Depends(rate_limit())])
async def refresh_payment_status(
    lookup: PaymentLookup = Depends(payment_lookup),
    reconciler: PaymentStatusReconciler = Depends(get_reconciler),
):
    view = await reconciler.refresh_from_provider(lookup)
    return success_response(data=view.model_dump(mode="json", exclude_none=True))


@router.post("/{payment_id}/refunds", summary="Refund payment", dependencies=[Depends(rate_limit("create"))])
async def refund_payment(
    payload: RefundPaymentRequest,
    lookup: PaymentLookup = Depends(payment_lookup),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    result = await service.refund_payment(lookup, payload)
    return success_response(data=result.model_dump(mode="json"), message="Refund created")


@users_router.get("/{user_id}/payment-info", summary="User payment aggregate", dependencies=[Depends(rate_limit())])
async def get_user_payment_info(
    user_id: str,
    service: PaymentApplicationService = Depends(get_payment_service),
):
    info = await service.get_user_payment_info(user_id)
    return success_response(data=info.model_dump(mode="json"))


@users_router.get("/{user_id}/payments", summary="User payment history", dependencies=[Depends(rate_limit())])
async def get_payment_history(
    user_id: str,
    limit: int = Query(default=DEFAULT_HISTORY_LIMIT, ge=1, le=MAX_HISTORY_LIMIT),
    service: PaymentApplicationService = Depends(get_payment_service),
):
    items = await service.get_payment_history(user_id, limit)
    return success_response(data=[item.model_dump(mode="json") for item in items])
