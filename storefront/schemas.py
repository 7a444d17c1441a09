"""
Pydantic schemas for request/response validation.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
from pydantic import BaseModel, Field, field_validator

from storefront.models import PaymentMethod, PaymentStatus


# ── Accounts & ledger ────────────────────────────────────────────────────────

class BalanceResponse(BaseModel):
    account_id: UUID
    username: str
    balance: Decimal
    currency: str


class LedgerEntryOut(BaseModel):
    id: UUID
    kind: str
    amount: Decimal
    balance_after: Decimal
    order_id: Optional[UUID] = None
    payment_transaction_id: Optional[UUID] = None
    description: Optional[str] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class LedgerListResponse(BaseModel):
    account_id: UUID
    entries: List[LedgerEntryOut]
    total: int


class AdjustBalanceRequest(BaseModel):
    """
    Admin correction. A positive amount is granted as a bonus, a negative one
    is taken back from the balance.
    """
    amount: Decimal = Field(..., description="Signed adjustment amount (non-zero)")
    reason: str = Field(..., min_length=1, max_length=500)

    @field_validator("amount")
    @classmethod
    def amount_non_zero(cls, v: Decimal) -> Decimal:
        if v == 0:
            raise ValueError("Amount must not be zero")
        return v


# ── Orders ───────────────────────────────────────────────────────────────────

class PurchaseRequest(BaseModel):
    account_id: UUID = Field(..., description="The buyer")
    catalog_item_id: UUID = Field(..., description="Item being bought")
    quantity: int = Field(1, description="Units to buy (at least 1)")
    delivery_info: Optional[str] = Field(
        None,
        max_length=1000,
        description="E-mail, player id or UID the goods are delivered to",
    )


class CheckoutLine(BaseModel):
    catalog_item_id: UUID
    quantity: int = 1


class CheckoutRequest(BaseModel):
    account_id: UUID
    lines: List[CheckoutLine] = Field(..., min_length=1)
    delivery_info: Optional[str] = Field(None, max_length=1000)


class PurchaseResponse(BaseModel):
    """Body of every purchase/checkout answer, successful or not."""
    success: bool
    order_number: Optional[str] = None
    order_id: Optional[UUID] = None
    fulfillment_key: Optional[str] = None
    fulfillment_keys: List[str] = []
    new_balance: Optional[Decimal] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    required: Optional[Decimal] = None
    available: Optional[Decimal] = None


class OrderItemOut(BaseModel):
    id: UUID
    catalog_item_id: UUID
    item_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    keys: List[str] = []


class OrderOut(BaseModel):
    id: UUID
    order_number: str
    account_id: UUID
    total_amount: Decimal
    status: str
    delivery_info: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    items: List[OrderItemOut] = []


class OrderListResponse(BaseModel):
    account_id: UUID
    orders: List[OrderOut]
    total: int
    page: int
    page_size: int


class RefundOrderRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


# ── Payments ─────────────────────────────────────────────────────────────────

class DepositRequest(BaseModel):
    account_id: UUID
    amount: Decimal = Field(..., description="Amount to top up")
    method: PaymentMethod


class PaymentResponse(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    status: PaymentStatus
    redirect_url: Optional[str] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None


class PaymentStatusResponse(BaseModel):
    transaction_id: str
    status: PaymentStatus
    amount: Decimal
    currency: str
    is_finalized: bool
    updated_at: datetime
    message: Optional[str] = None


class RefundPaymentRequest(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, description="Partial amount; omit for a full refund")


class ProviderOut(BaseModel):
    name: str
    display_name: str
    priority: int
    supported_methods: List[PaymentMethod]
    supports_refund: bool


class CompletePaymentResponse(BaseModel):
    transaction_id: str
    completed: bool

