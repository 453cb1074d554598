# topup/routers/payments.py
from __future__ import annotations
"""
Payments router for balance top-ups.

Особенности:
- Трёхфазное создание: validate -> pre-create -> create (ключ: invoiceId).
- Callback шлюза всегда отвечает 200 на распознанные события; 401 только
  при включённой проверке подписи, 500 при внутренней ошибке (шлюз повторит).
- Ошибки домена рендерятся обработчиками из topup.core.exceptions.
"""

import json

from fastapi import APIRouter, Depends, Path, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from topup.core.config import settings
from topup.core.db import get_async_db
from topup.core.exceptions import WebhookSignatureError
from topup.core.logging import audit_logger, get_logger
from topup.schemas.base import ErrorResponse
from topup.schemas.payment import (
    BillingHistoryItem,
    BillingHistoryResponse,
    CallbackResponse,
    CancelPaymentResponse,
    CreatePaymentRequest,
    CreatePaymentResponse,
    NotificationItem,
    NotificationsResponse,
    PaymentStatusResponse,
    PreCreateResponse,
    TopupRequest,
    ValidateResponse,
)
from topup.services.billing_queries import (
    CancellationService,
    PaymentNotificationService,
    StatusQueryService,
)
from topup.services.gateway_service import BaseGatewayClient, get_gateway_client, verify_callback_signature
from topup.services.payment_orchestrator import PaymentOrchestrator
from topup.services.webhook_reconciler import OUTCOME_IGNORED, ReconcileOutcome, WebhookReconciler

logger = get_logger(__name__)

router = APIRouter(
    prefix="/payments",
    tags=["payments"],
    responses={
        404: {"model": ErrorResponse, "description": "Not found"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
)

SIGNATURE_HEADER = "X-Callback-Signature"


def get_orchestrator(
    db: AsyncSession = Depends(get_async_db),
    gateway: BaseGatewayClient = Depends(get_gateway_client),
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, gateway)


# ---------------------------------------------------------------------
# Создание: validate / pre-create / create
# ---------------------------------------------------------------------

@router.post("/validate", response_model=ValidateResponse, summary="Dry-run validation of a top-up")
async def validate_payment(
    payload: TopupRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    preview = await orchestrator.validate(payload)
    topup = preview.topup
    return ValidateResponse(
        user_id=topup.user_id,
        amount=topup.amount,
        currency=topup.currency,
        payment_method=topup.payment_method.value,
        bank=topup.bank,
        gateway_request=preview.gateway_request,
    )


@router.post("/pre-create", response_model=PreCreateResponse, summary="Persist a top-up intent")
async def pre_create_payment(
    payload: TopupRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    record = await orchestrator.pre_create(payload)
    return PreCreateResponse(
        invoice_id=record.invoice_id,
        external_id=record.external_id,
        status=record.status,
        user_id=record.user_id,
        amount=record.amount,
        currency=record.currency,
        payment_method=record.payment_method,
        bank=record.bank,
        expires_at=record.expires_at,
        gateway_request=record.gateway_request,
    )


@router.post("/create", response_model=CreatePaymentResponse, summary="Create the gateway resource")
async def create_payment(
    payload: CreatePaymentRequest,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    result = await orchestrator.create(payload)
    record, resource = result.record, result.resource
    return CreatePaymentResponse(
        payment_id=resource.resource_id,
        invoice_id=record.invoice_id,
        external_id=record.external_id,
        amount=record.amount,
        currency=record.currency,
        payment_method=record.payment_method,
        bank=record.bank,
        qr_string=record.qr_string,
        account_number=record.account_number,
        expires_at=record.expires_at,
        status=record.status,
        already_existed=result.already_existed,
    )


# ---------------------------------------------------------------------
# Статус / отмена
# ---------------------------------------------------------------------

@router.get("/status/{payment_id}", response_model=PaymentStatusResponse, summary="Poll top-up status")
async def get_payment_status(
    payment_id: str = Path(..., min_length=1, max_length=128),
    db: AsyncSession = Depends(get_async_db),
):
    data = await StatusQueryService(db).get_status(payment_id)
    return PaymentStatusResponse(**data)


@router.post("/cancel/{payment_id}", response_model=CancelPaymentResponse, summary="Cancel a pending top-up")
async def cancel_payment(
    payment_id: str = Path(..., min_length=1, max_length=128),
    db: AsyncSession = Depends(get_async_db),
):
    record = await CancellationService(db).cancel(payment_id)
    return CancelPaymentResponse(
        invoice_id=record.invoice_id,
        status=record.status,
        cancelled_at=record.cancelled_at,
    )


# ---------------------------------------------------------------------
# Callback шлюза
# ---------------------------------------------------------------------

@router.post("/callback", response_model=CallbackResponse, summary="Gateway payment callback")
async def payment_callback(
    request: Request,
    db: AsyncSession = Depends(get_async_db),
):
    body = await request.body()

    # 1) Подпись (опционально)
    if settings.PAYMENT_WEBHOOK_VERIFY_SIGNATURE:
        signature = request.headers.get(SIGNATURE_HEADER)
        if not verify_callback_signature(body, signature):
            audit_logger.log_security_event(
                "webhook_signature_rejected",
                {"path": request.url.path, "signature_present": bool(signature)},
            )
            raise WebhookSignatureError("Invalid callback signature", code="INVALID_SIGNATURE")

    # 2) Разбор тела: нечитаемое тело подтверждаем, повтор его не исправит
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("webhook.malformed_body", size=len(body))
        payload = None
    if not isinstance(payload, dict):
        return CallbackResponse(outcome=OUTCOME_IGNORED)

    # 3) Сверка
    outcome: ReconcileOutcome = await WebhookReconciler(db).handle(payload)
    return CallbackResponse(
        outcome=outcome.outcome,
        invoice_id=outcome.invoice_id,
        credited_amount=outcome.credited_amount,
    )


# ---------------------------------------------------------------------
# История и уведомления
# ---------------------------------------------------------------------

@router.get("/history/{user_id}", response_model=BillingHistoryResponse, summary="User top-up history")
async def payment_history(
    user_id: str = Path(..., min_length=1, max_length=64),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_async_db),
):
    records = await StatusQueryService(db).history(user_id, limit=limit)
    items = [
        BillingHistoryItem(
            invoice_id=r.invoice_id,
            external_id=r.external_id,
            payment_id=r.gateway_resource_id,
            amount=r.amount,
            currency=r.currency,
            payment_method=r.payment_method,
            bank=r.bank,
            status=r.public_status,
            created_at=r.created_at,
            payment_time=r.payment_time,
            cancelled_at=r.cancelled_at,
        )
        for r in records
    ]
    return BillingHistoryResponse(user_id=user_id, items=items)


@router.get(
    "/notifications/{user_id}",
    response_model=NotificationsResponse,
    summary="Drain pending payment notifications",
)
async def drain_notifications(
    user_id: str = Path(..., min_length=1, max_length=64),
    db: AsyncSession = Depends(get_async_db),
):
    notes = await PaymentNotificationService(db).drain(user_id)
    return NotificationsResponse(
        user_id=user_id,
        notifications=[
            NotificationItem(
                id=n.id, kind=n.kind, invoice_id=n.invoice_id, amount=n.amount, created_at=n.created_at
            )
            for n in notes
        ],
    )
