from typing import List, Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.database import get_db
from storefront.dependencies import get_provider_factory
from storefront.models import PaymentMethod
from storefront.providers import SAFE_PROVIDER_ERROR_CODES, PaymentProviderFactory, PaymentResult
from storefront.routers.errors import status_for_code
from storefront.schemas import (
    CompletePaymentResponse,
    DepositRequest,
    PaymentResponse,
    PaymentStatusResponse,
    ProviderOut,
    RefundPaymentRequest,
)
import storefront.payments as payments

log = structlog.get_logger(component="payments_api")

router = APIRouter(prefix="/payments", tags=["Payments"])

GENERIC_PAYMENT_ERROR = "The payment could not be processed. Please try again later."


def _payment_response(result: PaymentResult, success_code: int) -> JSONResponse:
    message = result.error_message
    if not result.success and result.error_code not in SAFE_PROVIDER_ERROR_CODES:
        log.warning("payment_error_masked", code=result.error_code, detail=result.error_message)
        message = GENERIC_PAYMENT_ERROR

    body = PaymentResponse(
        success=result.success,
        transaction_id=result.transaction_id,
        status=result.status,
        redirect_url=result.redirect_url,
        error_code=result.error_code,
        error_message=message,
    ).model_dump(mode="json")
    http_code = success_code if result.success else status_for_code(result.error_code)
    return JSONResponse(status_code=http_code, content=body)


@router.post(
    "/deposits",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Start a balance top-up",
)
def create_deposit(
    request: DepositRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    factory: PaymentProviderFactory = Depends(get_provider_factory),
):
    client_ip = http_request.client.host if http_request.client else None
    result = payments.create_deposit(
        db=db,
        factory=factory,
        account_id=request.account_id,
        amount=request.amount,
        method=request.method,
        client_ip=client_ip,
    )
    return _payment_response(result, status.HTTP_201_CREATED)


@router.get(
    "/providers",
    response_model=List[ProviderOut],
    summary="List active payment providers",
)
def list_providers(
    method: Optional[PaymentMethod] = Query(default=None),
    factory: PaymentProviderFactory = Depends(get_provider_factory),
):
    providers = (
        factory.get_providers_for_method(method) if method else factory.get_active_providers()
    )
    return [
        ProviderOut(
            name=p.name,
            display_name=factory.display_name(p),
            priority=factory.priority(p),
            supported_methods=list(p.supported_methods),
            supports_refund=p.supports_refund,
        )
        for p in providers
    ]


@router.get(
    "/{transaction_id}",
    response_model=PaymentStatusResponse,
    summary="Get stored payment status",
)
def get_payment_status(transaction_id: str, db: Session = Depends(get_db)):
    result = payments.get_payment_status(db, transaction_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PAYMENT_NOT_FOUND", "message": f"Payment transaction not found: {transaction_id}"},
        )
    return PaymentStatusResponse(**result.model_dump())


@router.post(
    "/{transaction_id}/complete",
    response_model=CompletePaymentResponse,
    summary="Confirm a payment manually and credit the balance (admin)",
)
def complete_payment(transaction_id: str, db: Session = Depends(get_db)):
    tx = payments.find_transaction(db, transaction_id)
    if tx is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "PAYMENT_NOT_FOUND", "message": f"Payment transaction not found: {transaction_id}"},
        )
    internal_id = tx.transaction_id
    if not payments.complete_payment(db, internal_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "INVALID_STATUS", "message": "Payment cannot be completed."},
        )
    return CompletePaymentResponse(transaction_id=internal_id, completed=True)


@router.post(
    "/{transaction_id}/refund",
    response_model=PaymentResponse,
    summary="Refund a completed deposit (admin)",
)
def refund_payment(
    transaction_id: str,
    request: Optional[RefundPaymentRequest] = Body(default=None),
    db: Session = Depends(get_db),
    factory: PaymentProviderFactory = Depends(get_provider_factory),
):
    result = payments.refund_payment(
        db=db,
        factory=factory,
        transaction_id=transaction_id,
        amount=request.amount if request else None,
    )
    return _payment_response(result, status.HTTP_200_OK)
