"""
SQLAlchemy ORM models for the storefront transaction core.

Rows reference each other through explicit foreign-key columns; related rows
are fetched with queries rather than navigated through an object graph.
"""
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from sqlalchemy import (
    Column, String, Numeric, Integer, ForeignKey,
    DateTime, Text, Boolean, Index, CheckConstraint, UniqueConstraint
)
from sqlalchemy.types import Uuid
from sqlalchemy.orm import declarative_base
import uuid

Base = declarative_base()

MONEY = Numeric(precision=20, scale=4)


def utcnow():
    return datetime.now(timezone.utc)


class LedgerEntryKind(str, Enum):
    DEPOSIT = "DEPOSIT"          # Money in from a payment provider
    PURCHASE = "PURCHASE"        # Balance spent on an order
    REFUND = "REFUND"            # Order refunded to balance, or deposit refunded to the payer
    BONUS = "BONUS"              # Admin / system grant
    WITHDRAWAL = "WITHDRAWAL"    # Admin correction downwards


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    CARD = "card"
    SBP = "sbp"
    SBERPAY = "sberpay"
    YOOMONEY = "yoomoney"
    QIWI = "qiwi"
    WEBMONEY = "webmoney"
    CRYPTO = "crypto"
    PAYPAL = "paypal"
    BALANCE = "balance"
    MOBILE = "mobile"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"
    EXPIRED = "EXPIRED"

    @property
    def is_final(self) -> bool:
        return self in FINAL_PAYMENT_STATUSES

    def can_transition_to(self, new_status: "PaymentStatus") -> bool:
        return PaymentStatus(new_status) in _PAYMENT_TRANSITIONS[self]


FINAL_PAYMENT_STATUSES = frozenset({
    PaymentStatus.COMPLETED,
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.REFUNDED,
    PaymentStatus.EXPIRED,
})

_PAYMENT_TRANSITIONS = {
    PaymentStatus.PENDING: frozenset({
        PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED,
        PaymentStatus.CANCELLED, PaymentStatus.EXPIRED,
    }),
    PaymentStatus.PROCESSING: frozenset({
        PaymentStatus.COMPLETED, PaymentStatus.FAILED,
        PaymentStatus.CANCELLED, PaymentStatus.EXPIRED,
    }),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.CANCELLED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
    PaymentStatus.EXPIRED: frozenset(),
}


class Account(Base):
    """
    A balance-holding user identity.
    ``balance`` is a denormalized snapshot of the sum of the account's ledger
    entries, kept for O(1) reads; only the ledger module writes it.
    """
    __tablename__ = "accounts"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    username = Column(String(150), nullable=False, unique=True)
    email = Column(String(255), nullable=True, unique=True)
    balance = Column(MONEY, nullable=False, default=Decimal("0"))
    version = Column(Integer, nullable=False, default=0)  # bumped on every balance change
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_account_balance_non_negative"),
    )

    def __repr__(self):
        return f"<Account {self.username} balance={self.balance}>"


class CatalogItem(Base):
    """A purchasable SKU: game currency pack, gift card, VPN subscription."""
    __tablename__ = "catalog_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String(200), nullable=False)
    price = Column(MONEY, nullable=False)
    stock_quantity = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint("stock_quantity >= 0", name="ck_catalog_item_stock_non_negative"),
        CheckConstraint("price >= 0", name="ck_catalog_item_price_non_negative"),
    )

    def __repr__(self):
        return f"<CatalogItem {self.name} price={self.price} stock={self.stock_quantity}>"


class Order(Base):
    __tablename__ = "orders"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    order_number = Column(String(32), nullable=False, unique=True)
    total_amount = Column(MONEY, nullable=False)
    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    delivery_info = Column(Text, nullable=True)  # e-mail, UID, player id for delivery
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_order_account_created", "account_id", "created_at"),
    )

    def __repr__(self):
        return f"<Order {self.order_number} status={self.status} total={self.total_amount}>"


class OrderItem(Base):
    """One line of an order. Name and price are snapshots taken at purchase time."""
    __tablename__ = "order_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id", ondelete="CASCADE"),
                      nullable=False, index=True)
    catalog_item_id = Column(Uuid(as_uuid=True), ForeignKey("catalog_items.id"), nullable=False)
    item_name = Column(String(200), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(MONEY, nullable=False)
    total_price = Column(MONEY, nullable=False)

    __table_args__ = (
        CheckConstraint("quantity >= 1", name="ck_order_item_quantity_positive"),
    )

    def __repr__(self):
        return f"<OrderItem {self.item_name} x{self.quantity}>"


class FulfillmentKey(Base):
    """Redemption token delivered to the buyer. Used keys always point at their order line."""
    __tablename__ = "fulfillment_keys"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    catalog_item_id = Column(Uuid(as_uuid=True), ForeignKey("catalog_items.id"), nullable=False)
    key_value = Column(String(64), nullable=False, unique=True)
    is_used = Column(Boolean, nullable=False, default=False)
    order_item_id = Column(Uuid(as_uuid=True), ForeignKey("order_items.id", ondelete="CASCADE"),
                           nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    used_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "(is_used AND order_item_id IS NOT NULL) OR (NOT is_used AND order_item_id IS NULL)",
            name="ck_fulfillment_key_used_has_order_item",
        ),
    )

    def __repr__(self):
        return f"<FulfillmentKey item={self.catalog_item_id} used={self.is_used}>"


class PaymentTransaction(Base):
    """
    A money-in attempt through an external provider.
    ``order_id`` is NULL for balance deposits.
    """
    __tablename__ = "payment_transactions"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    transaction_id = Column(String(64), nullable=False, unique=True)
    provider_transaction_id = Column(String(128), nullable=True, index=True)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    provider_name = Column(String(50), nullable=False)
    method = Column(String(20), nullable=False)
    amount = Column(MONEY, nullable=False)
    currency = Column(String(3), nullable=False, default="RUB")
    status = Column(String(20), nullable=False, default=PaymentStatus.PENDING.value)
    description = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    client_ip = Column(String(45), nullable=True)
    provider_data = Column(Text, nullable=True)               # JSON string
    metadata_ = Column("metadata", Text, nullable=True)       # JSON string
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_payment_account_created", "account_id", "created_at"),
    )

    def __repr__(self):
        return f"<PaymentTransaction {self.transaction_id} {self.status} amount={self.amount}>"


class LedgerEntry(Base):
    """
    Immutable record of one balance mutation.
    ``amount`` is signed (positive=credit, negative=debit) and ``balance_after``
    is the account balance right after it was applied.
    """
    __tablename__ = "ledger_entries"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    account_id = Column(Uuid(as_uuid=True), ForeignKey("accounts.id"), nullable=False)
    kind = Column(String(20), nullable=False)
    amount = Column(MONEY, nullable=False)
    balance_after = Column(MONEY, nullable=False)
    account_version = Column(Integer, nullable=False)   # accounts.version this entry produced
    order_id = Column(Uuid(as_uuid=True), ForeignKey("orders.id"), nullable=True)
    payment_transaction_id = Column(Uuid(as_uuid=True), ForeignKey("payment_transactions.id"),
                                    nullable=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        # One purchase debit / one refund per order, one credit / one refund per payment
        UniqueConstraint("order_id", "kind", name="uq_ledger_order_kind"),
        UniqueConstraint("payment_transaction_id", "kind", name="uq_ledger_payment_kind"),
        UniqueConstraint("account_id", "account_version", name="uq_ledger_account_version"),
        Index("ix_ledger_account_created", "account_id", "created_at"),
        Index("ix_ledger_kind", "kind"),
    )

    def __repr__(self):
        return f"<LedgerEntry {self.kind} amount={self.amount} account={self.account_id}>"


class PaymentProviderConfig(Base):
    """Admin-managed provider settings, read by the provider factory on every request."""
    __tablename__ = "payment_provider_configs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(50), nullable=False, unique=True)
    display_name = Column(String(100), nullable=False)
    is_enabled = Column(Boolean, nullable=False, default=False)
    priority = Column(Integer, nullable=False, default=100)   # lower = preferred
    api_key = Column(Text, nullable=True)
    secret_key = Column(Text, nullable=True)
    merchant_id = Column(String(100), nullable=True)
    is_test_mode = Column(Boolean, nullable=False, default=False)
    settings = Column(Text, nullable=True)                    # JSON string
    commission = Column(Numeric(precision=5, scale=2), nullable=True)   # percent
    min_amount = Column(MONEY, nullable=True)
    max_amount = Column(MONEY, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<PaymentProviderConfig {self.name} enabled={self.is_enabled} priority={self.priority}>"
