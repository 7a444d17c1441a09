"""
Purchase orchestrator — turns a buy request into a completed order.

One checkout is one unit of work:

  1. Resolve the buyer's account.
  2. Row-lock every catalog item (ascending id order, so two checkouts that
     share items never deadlock) and check stock.
  3. Row-lock the account and check funds against the order total.
  4. Create the order, then per line: snapshot the OrderItem, decrement
     stock with a guarded UPDATE, mint a used fulfillment key.
  5. Debit the account and append the PURCHASE ledger entry.
  6. Mark the order COMPLETED and commit.

Business rejections (unavailable item, insufficient stock or funds) roll the
whole unit back and come back as a typed ``PurchaseResult``; anything else is
logged in full and reported to the buyer as a generic failure.
"""
from collections import OrderedDict
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from storefront import catalog, ledger
from storefront.config import settings
from storefront.database import unit_of_work
from storefront.exceptions import (
    InsufficientFundsError,
    InsufficientStockError,
    InvalidRequestError,
    InvalidStatusTransitionError,
    OrderNotFoundError,
    StorefrontError,
)
from storefront.models import (
    FulfillmentKey,
    LedgerEntryKind,
    Order,
    OrderItem,
    OrderStatus,
    utcnow,
)

log = structlog.get_logger(component="purchases")

GENERIC_FAILURE_MESSAGE = "The order could not be completed. Please try again later."


@dataclass
class PurchaseResult:
    success: bool
    order_number: Optional[str] = None
    order_id: Optional[UUID] = None
    fulfillment_key: Optional[str] = None
    fulfillment_keys: List[str] = field(default_factory=list)
    new_balance: Optional[Decimal] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    required: Optional[Decimal] = None
    available: Optional[Decimal] = None

    @classmethod
    def failed(cls, exc: StorefrontError) -> "PurchaseResult":
        result = cls(success=False, error_code=exc.code, error_message=str(exc))
        if isinstance(exc, InsufficientFundsError):
            result.required = exc.required
            result.available = exc.available
        return result


@dataclass
class OrderDetail:
    order: Order
    items: List[OrderItem]
    keys_by_item: dict


# ──────────────────────────────────────────────────────────────────────────────
# Checkout
# ──────────────────────────────────────────────────────────────────────────────

def _normalize_lines(lines: Iterable[Tuple[UUID, int]]) -> "OrderedDict[UUID, int]":
    merged: "OrderedDict[UUID, int]" = OrderedDict()
    for item_id, quantity in lines:
        if quantity is None or int(quantity) < 1:
            raise InvalidRequestError("Quantity must be at least 1.", code="INVALID_QUANTITY")
        merged[item_id] = merged.get(item_id, 0) + int(quantity)
    if not merged:
        raise InvalidRequestError("Nothing to purchase.", code="INVALID_QUANTITY")
    return merged


def _place_order(
    db: Session,
    account_id: UUID,
    lines: "OrderedDict[UUID, int]",
    delivery_info: Optional[str],
) -> Tuple[Order, List[str], Decimal]:
    ledger.get_active_account(db, account_id)

    # Lock items in a stable order; first-line order is kept for the response
    locked = {}
    for item_id in sorted(lines, key=str):
        item = catalog.lock_item(db, item_id)
        if item.stock_quantity < lines[item_id]:
            raise InsufficientStockError(str(item.id), lines[item_id], item.stock_quantity)
        locked[item_id] = item

    total = sum(
        (Decimal(locked[item_id].price) * quantity for item_id, quantity in lines.items()),
        Decimal("0"),
    )

    account = ledger.lock_account(db, account_id)
    if account.balance < total:
        raise InsufficientFundsError(required=total, available=account.balance)

    order = Order(
        account_id=account_id,
        order_number=catalog.generate_order_number(settings.ORDER_NUMBER_PREFIX),
        total_amount=total,
        status=OrderStatus.PROCESSING.value,
        delivery_info=delivery_info,
    )
    db.add(order)
    db.flush()  # assign ID without committing

    keys = []
    for item_id, quantity in lines.items():
        item = locked[item_id]
        order_item = OrderItem(
            order_id=order.id,
            catalog_item_id=item.id,
            item_name=item.name,
            quantity=quantity,
            unit_price=item.price,
            total_price=Decimal(item.price) * quantity,
        )
        db.add(order_item)
        db.flush()

        catalog.take_stock(db, item, quantity)
        keys.append(catalog.issue_key(db, item.id, order_item.id).key_value)

    names = ", ".join(locked[item_id].name for item_id in lines)
    entry = ledger.debit(
        db,
        account_id,
        total,
        description=f"Purchase: {names}",
        kind=LedgerEntryKind.PURCHASE,
        order_id=order.id,
    )

    order.status = OrderStatus.COMPLETED.value
    order.completed_at = utcnow()
    db.flush()
    return order, keys, entry.balance_after


def checkout(
    db: Session,
    account_id: UUID,
    lines: Sequence[Tuple[UUID, int]],
    delivery_info: Optional[str] = None,
) -> PurchaseResult:
    """Buy one or more catalog items in a single order paid from the balance."""
    try:
        normalized = _normalize_lines(lines)
    except InvalidRequestError as exc:
        return PurchaseResult.failed(exc)

    try:
        with unit_of_work(db):
            order, keys, new_balance = _place_order(db, account_id, normalized, delivery_info)
            result = PurchaseResult(
                success=True,
                order_number=order.order_number,
                order_id=order.id,
                fulfillment_key=keys[0],
                fulfillment_keys=keys,
                new_balance=Decimal(new_balance),
            )
            total = order.total_amount
    except StorefrontError as exc:
        log.info(
            "purchase_rejected",
            account_id=str(account_id),
            code=exc.code,
            reason=str(exc),
        )
        return PurchaseResult.failed(exc)
    except Exception:
        log.exception(
            "purchase_failed",
            account_id=str(account_id),
            lines={str(k): v for k, v in normalized.items()},
        )
        return PurchaseResult(
            success=False,
            error_code="PURCHASE_FAILED",
            error_message=GENERIC_FAILURE_MESSAGE,
        )

    log.info(
        "purchase_completed",
        order_number=result.order_number,
        account_id=str(account_id),
        amount=str(total),
        new_balance=str(result.new_balance),
    )
    return result


def purchase(
    db: Session,
    account_id: UUID,
    catalog_item_id: UUID,
    quantity: int = 1,
    delivery_info: Optional[str] = None,
) -> PurchaseResult:
    """Buy ``quantity`` units of a single catalog item."""
    return checkout(db, account_id, [(catalog_item_id, quantity)], delivery_info)


# ──────────────────────────────────────────────────────────────────────────────
# Admin
# ──────────────────────────────────────────────────────────────────────────────

def refund_order(db: Session, order_number: str, reason: Optional[str] = None) -> Order:
    """
    Return a completed order's total to the buyer's balance.
    Delivered keys stay used and stock is not restored. Caller commits.
    """
    order = db.execute(
        select(Order)
        .where(Order.order_number == order_number)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(order_number)
    if order.status != OrderStatus.COMPLETED.value:
        raise InvalidStatusTransitionError("Order", order.status, OrderStatus.REFUNDED.value)

    ledger.credit(
        db,
        order.account_id,
        order.total_amount,
        description=f"Refund for order {order.order_number}" + (f": {reason}" if reason else ""),
        kind=LedgerEntryKind.REFUND,
        order_id=order.id,
        require_active=False,
    )
    order.status = OrderStatus.REFUNDED.value
    db.flush()

    log.info("order_refunded", order_number=order.order_number, amount=str(order.total_amount))
    return order


# ──────────────────────────────────────────────────────────────────────────────
# Read-only queries
# ──────────────────────────────────────────────────────────────────────────────

def _load_detail(db: Session, order: Order) -> OrderDetail:
    items = db.execute(
        select(OrderItem).where(OrderItem.order_id == order.id)
    ).scalars().all()

    keys_by_item = {item.id: [] for item in items}
    if items:
        keys = db.execute(
            select(FulfillmentKey)
            .where(FulfillmentKey.order_item_id.in_(list(keys_by_item)))
            .order_by(FulfillmentKey.created_at, FulfillmentKey.id)
        ).scalars().all()
        for key in keys:
            keys_by_item[key.order_item_id].append(key.key_value)

    return OrderDetail(order=order, items=list(items), keys_by_item=keys_by_item)


def get_order(db: Session, account_id: UUID, order_id: UUID) -> OrderDetail:
    order = db.execute(
        select(Order).where(Order.id == order_id, Order.account_id == account_id)
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(str(order_id))
    return _load_detail(db, order)


def get_order_by_number(db: Session, account_id: UUID, order_number: str) -> OrderDetail:
    order = db.execute(
        select(Order).where(Order.order_number == order_number, Order.account_id == account_id)
    ).scalar_one_or_none()
    if order is None:
        raise OrderNotFoundError(order_number)
    return _load_detail(db, order)


def list_orders(
    db: Session,
    account_id: UUID,
    page: int = 1,
    page_size: int = 10,
) -> Tuple[List[OrderDetail], int]:
    """Return one page of the account's orders, newest first."""
    total = db.execute(
        select(func.count(Order.id)).where(Order.account_id == account_id)
    ).scalar()

    orders = db.execute(
        select(Order)
        .where(Order.account_id == account_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .limit(page_size)
        .offset((page - 1) * page_size)
    ).scalars().all()

    return [_load_detail(db, order) for order in orders], total
