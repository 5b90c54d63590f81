"""
Payments API routes.

Webhook intake, checkout, status lookup and refunds. Keep this thin: routes
only translate between HTTP and the application services.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from api.dependencies import (
    enforce_webhook_allowlist,
    get_payment_service,
    get_refund_orchestrator,
    get_settlement_processor,
    require_internal_token,
)
from application.dtos.payments import (
    CreatePaymentCommand,
    PaymentView,
    RefundCommand,
)
from application.services.payment_service import PaymentService
from application.services.refund_service import RefundOrchestrator
from application.services.settlement_service import SettlementProcessor
from core.i18n import get_locale, t
from core.logging_config import get_logger
from core.response import Response, error_response, success_response
from domain.payment.exceptions import InvalidPaymentStateException
from shared.codes import BusinessCode
from shared.codes.payment_codes import PaymentCode


router = APIRouter(prefix="/payments", tags=["Payments"])
logger = get_logger(__name__)

# webhook result status -> envelope code
_WEBHOOK_CODES = {
    400: PaymentCode.SIGNATURE_ERROR,
    404: PaymentCode.PAYMENT_NOT_FOUND,
    500: BusinessCode.SYSTEM_ERROR,
}


@router.post(
    "/webhooks/{provider}",
    summary="Provider webhook",
    dependencies=[Depends(enforce_webhook_allowlist)],
)
async def payments_webhook(
    provider: str,
    request: Request,
    settlement: SettlementProcessor = Depends(get_settlement_processor),
):
    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}
    result = await settlement.handle_callback(provider.lower(), headers, raw_body)

    data = {"payment_id": result.payment_id, "outcome": result.outcome, "applied": result.applied}
    if result.status_code == status.HTTP_200_OK:
        body = success_response(data=data, message=result.message)
    else:
        body = error_response(
            code=_WEBHOOK_CODES.get(result.status_code, BusinessCode.BUSINESS_ERROR),
            message=result.message,
            error_type="WebhookRejected",
            details=data,
            request_id=getattr(request.state, "request_id", None),
            locale=get_locale(),
        )
    return JSONResponse(status_code=result.status_code, content=body.model_dump(mode="json"))


@router.post("", summary="Create payment", status_code=status.HTTP_201_CREATED)
async def create_payment(
    payload: CreatePaymentCommand,
    service: PaymentService = Depends(get_payment_service),
):
    payment = await service.create_payment(payload)
    view = PaymentView.model_validate(payment)
    data = view.model_dump(mode="json")
    data["qr_code"] = payment.metadata.get("qr_code")
    data["payout_address"] = payment.metadata.get("payout_address")
    return success_response(data=data, message=t("payments.created"))


@router.get("/{payment_id}", summary="Payment status")
async def get_payment(
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    payment = await service.get_payment(payment_id)
    return success_response(
        data=PaymentView.model_validate(payment).model_dump(mode="json"),
        message=t("payments.status.ok"),
    )


@router.post("/{payment_id}/capture", summary="Capture an approved payment")
async def capture_payment(
    payment_id: str,
    service: PaymentService = Depends(get_payment_service),
):
    # called from the return URL once the buyer has approved the order
    payment = await service.capture_payment(payment_id)
    return success_response(
        data=PaymentView.model_validate(payment).model_dump(mode="json"),
        message=t("payments.captured"),
    )


@router.post(
    "/refunds",
    summary="Refund a completed payment",
    dependencies=[Depends(require_internal_token)],
)
async def refund_payment(
    payload: RefundCommand,
    orchestrator: RefundOrchestrator = Depends(get_refund_orchestrator),
):
    result = await orchestrator.refund(payload.payment_id, payload.reason)
    data = {
        "success": result.success,
        "message": result.message,
        "outcome": result.outcome.value,
        "status": result.status.value,
        "attempts": result.attempts,
        "provider_response": result.provider_response,
    }
    if result.success:
        return success_response(data=data, message=t("payments.refund.processed"))
    body = Response(code=PaymentCode.PROVIDER_ERROR, message=t("payments.refund.failed"), data=data)
    return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body.model_dump(mode="json"))


@router.post(
    "/refunds/async",
    summary="Queue a refund",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(require_internal_token)],
)
async def enqueue_refund(
    payload: RefundCommand,
    service: PaymentService = Depends(get_payment_service),
):
    from infrastructure.tasks.payment_tasks import process_refund

    payment = await service.get_payment(payload.payment_id)
    if not payment.is_refundable():
        raise InvalidPaymentStateException(payment.id, payment.status.value, expected="completed")
    # eager mode runs the task inline; keep its event loop off ours
    task = await run_in_threadpool(process_refund.delay, payment.id, payload.reason)
    logger.info("refund_enqueued", payment_id=payment.id, task_id=task.id)
    return success_response(
        data={"task_id": task.id, "payment_id": payment.id},
        message=t("payments.refund.queued"),
    )
