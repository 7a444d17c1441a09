"""
Catalog stock store and fulfillment key issuer.
"""
import uuid
from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from storefront.exceptions import InsufficientStockError, ItemUnavailableError
from storefront.models import CatalogItem, FulfillmentKey, utcnow


def lock_item(db: Session, item_id: UUID) -> CatalogItem:
    """Row-lock a purchasable item; missing or inactive items are unavailable."""
    item = db.execute(
        select(CatalogItem)
        .where(CatalogItem.id == item_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if item is None or not item.is_active:
        raise ItemUnavailableError(str(item_id))
    return item


def take_stock(db: Session, item: CatalogItem, quantity: int) -> None:
    """
    Decrement stock by ``quantity``. The guarded UPDATE only matches while
    enough units remain, so two buyers racing for the last unit cannot both
    get it.
    """
    result = db.execute(
        update(CatalogItem)
        .where(CatalogItem.id == item.id, CatalogItem.stock_quantity >= quantity)
        .values(stock_quantity=CatalogItem.stock_quantity - quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    db.refresh(item)
    if result.rowcount != 1:
        raise InsufficientStockError(str(item.id), quantity, item.stock_quantity)


def generate_order_number(prefix: str) -> str:
    """Human-readable order number, e.g. ``DV-20260301-1A2B3C4D``."""
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"{prefix}-{today}-{uuid.uuid4().hex[:8].upper()}"


def generate_key_value() -> str:
    return str(uuid.uuid4()).upper()


def issue_key(db: Session, catalog_item_id: UUID, order_item_id: UUID) -> FulfillmentKey:
    """Mint a key for a purchased line; it is born used and linked to that line."""
    now = utcnow()
    key = FulfillmentKey(
        catalog_item_id=catalog_item_id,
        key_value=generate_key_value(),
        is_used=True,
        order_item_id=order_item_id,
        created_at=now,
        used_at=now,
    )
    db.add(key)
    return key
