from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from storefront.config import settings
from storefront.database import get_db, unit_of_work
from storefront.exceptions import StorefrontError
from storefront.routers.errors import handle_service_error
from storefront.schemas import (
    AdjustBalanceRequest,
    BalanceResponse,
    LedgerEntryOut,
    LedgerListResponse,
)
import storefront.ledger as ledger

router = APIRouter(prefix="/accounts", tags=["Accounts"])


@router.get(
    "/{account_id}/balance",
    response_model=BalanceResponse,
    summary="Get account balance",
)
def get_balance(account_id: UUID, db: Session = Depends(get_db)):
    try:
        account = ledger.get_balance(db, account_id)
    except StorefrontError as e:
        raise handle_service_error(e)

    return BalanceResponse(
        account_id=account.id,
        username=account.username,
        balance=account.balance,
        currency=settings.CURRENCY,
    )


@router.get(
    "/{account_id}/ledger",
    response_model=LedgerListResponse,
    summary="Get balance history",
)
def get_ledger(
    account_id: UUID,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    try:
        entries, total = ledger.history(db, account_id, limit=limit, offset=offset)
    except StorefrontError as e:
        raise handle_service_error(e)

    return LedgerListResponse(
        account_id=account_id,
        entries=[LedgerEntryOut.model_validate(e) for e in entries],
        total=total,
    )


@router.post(
    "/{account_id}/adjust",
    response_model=LedgerEntryOut,
    status_code=status.HTTP_201_CREATED,
    summary="Manually adjust a balance (admin)",
)
def adjust_balance(account_id: UUID, request: AdjustBalanceRequest, db: Session = Depends(get_db)):
    try:
        with unit_of_work(db):
            entry = ledger.adjust_balance(db, account_id, request.amount, request.reason)
            out = LedgerEntryOut.model_validate(entry)
    except StorefrontError as e:
        raise handle_service_error(e)

    return out
