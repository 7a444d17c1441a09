from dataclasses import asdict
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storefront.database import get_db, unit_of_work
from storefront.exceptions import StorefrontError
from storefront.routers.errors import handle_service_error, status_for_code
from storefront.schemas import (
    CheckoutRequest,
    OrderItemOut,
    OrderListResponse,
    OrderOut,
    PurchaseRequest,
    PurchaseResponse,
    RefundOrderRequest,
)
import storefront.purchases as purchases

router = APIRouter(prefix="/orders", tags=["Orders"])


def _purchase_response(result: purchases.PurchaseResult) -> JSONResponse:
    body = PurchaseResponse(**asdict(result)).model_dump(mode="json")
    if result.success:
        return JSONResponse(status_code=status.HTTP_201_CREATED, content=body)
    return JSONResponse(status_code=status_for_code(result.error_code), content=body)


def _order_out(detail: purchases.OrderDetail) -> OrderOut:
    order = detail.order
    return OrderOut(
        id=order.id,
        order_number=order.order_number,
        account_id=order.account_id,
        total_amount=order.total_amount,
        status=order.status,
        delivery_info=order.delivery_info,
        created_at=order.created_at,
        completed_at=order.completed_at,
        items=[
            OrderItemOut(
                id=item.id,
                catalog_item_id=item.catalog_item_id,
                item_name=item.item_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total_price=item.total_price,
                keys=detail.keys_by_item.get(item.id, []),
            )
            for item in detail.items
        ],
    )


@router.post(
    "/purchase",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Buy a catalog item from the account balance",
)
def purchase(request: PurchaseRequest, db: Session = Depends(get_db)):
    result = purchases.purchase(
        db=db,
        account_id=request.account_id,
        catalog_item_id=request.catalog_item_id,
        quantity=request.quantity,
        delivery_info=request.delivery_info,
    )
    return _purchase_response(result)


@router.post(
    "/checkout",
    response_model=PurchaseResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Buy several catalog items in one order",
)
def checkout(request: CheckoutRequest, db: Session = Depends(get_db)):
    result = purchases.checkout(
        db=db,
        account_id=request.account_id,
        lines=[(line.catalog_item_id, line.quantity) for line in request.lines],
        delivery_info=request.delivery_info,
    )
    return _purchase_response(result)


@router.get(
    "/accounts/{account_id}",
    response_model=OrderListResponse,
    summary="List an account's orders",
)
def list_orders(
    account_id: UUID,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    details, total = purchases.list_orders(db, account_id, page=page, page_size=page_size)
    return OrderListResponse(
        account_id=account_id,
        orders=[_order_out(d) for d in details],
        total=total,
        page=page,
        page_size=page_size,
    )


@router.get(
    "/accounts/{account_id}/number/{order_number}",
    response_model=OrderOut,
    summary="Get an order by its order number",
)
def get_order_by_number(account_id: UUID, order_number: str, db: Session = Depends(get_db)):
    try:
        detail = purchases.get_order_by_number(db, account_id, order_number)
    except StorefrontError as e:
        raise handle_service_error(e)
    return _order_out(detail)


@router.get(
    "/accounts/{account_id}/{order_id}",
    response_model=OrderOut,
    summary="Get an order with its delivered keys",
)
def get_order(account_id: UUID, order_id: UUID, db: Session = Depends(get_db)):
    try:
        detail = purchases.get_order(db, account_id, order_id)
    except StorefrontError as e:
        raise handle_service_error(e)
    return _order_out(detail)


@router.post(
    "/{order_number}/refund",
    response_model=OrderOut,
    summary="Refund a completed order to the buyer's balance (admin)",
)
def refund_order(
    order_number: str,
    request: Optional[RefundOrderRequest] = Body(default=None),
    db: Session = Depends(get_db),
):
    reason = request.reason if request else None
    try:
        with unit_of_work(db):
            order = purchases.refund_order(db, order_number, reason=reason)
            account_id = order.account_id
    except StorefrontError as e:
        raise handle_service_error(e)

    return _order_out(purchases.get_order_by_number(db, account_id, order_number))
