"""
Custom exceptions for the storefront transaction core.

Each error carries a stable ``code`` that routers and result objects expose to
callers, so the UI can render a specific message for every business outcome.
"""
from decimal import Decimal


class StorefrontError(Exception):
    """Base class for all storefront errors."""
    code = "STOREFRONT_ERROR"


# ── Validation ───────────────────────────────────────────────────────────────

class InvalidRequestError(StorefrontError):
    """Raised for malformed input (bad amount, bad quantity) before storage is touched."""
    def __init__(self, message: str, code: str = "INVALID_REQUEST"):
        self.code = code
        super().__init__(message)


# ── Not found ────────────────────────────────────────────────────────────────

class AccountNotFoundError(StorefrontError):
    """Raised when the requested account does not exist or is inactive."""
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found or inactive: {account_id}")


class ItemUnavailableError(StorefrontError):
    """Raised when a catalog item is missing or switched off."""
    code = "ITEM_UNAVAILABLE"

    def __init__(self, item_id: str):
        self.item_id = item_id
        super().__init__("Item not found or unavailable.")


class OrderNotFoundError(StorefrontError):
    code = "ORDER_NOT_FOUND"

    def __init__(self, reference: str):
        super().__init__(f"Order not found: {reference}")


class PaymentNotFoundError(StorefrontError):
    code = "PAYMENT_NOT_FOUND"

    def __init__(self, transaction_id: str):
        self.transaction_id = transaction_id
        super().__init__(f"Payment transaction not found: {transaction_id}")


# ── Conflicts (business-rule rejections) ─────────────────────────────────────

class InsufficientFundsError(StorefrontError):
    """Raised when a debit exceeds the account's available balance."""
    code = "INSUFFICIENT_FUNDS"

    def __init__(self, required: Decimal, available: Decimal):
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient funds. Required: {required:.2f}, available: {available:.2f}."
        )


class InsufficientStockError(StorefrontError):
    """Raised when fewer units remain than the buyer asked for."""
    code = "INSUFFICIENT_STOCK"

    def __init__(self, item_id: str, requested: int, available: int):
        self.item_id = item_id
        self.requested = requested
        self.available = available
        super().__init__("Item is temporarily out of stock.")


class InvalidStatusTransitionError(StorefrontError):
    """Raised when an order or payment is asked to move to a status it cannot reach."""
    code = "INVALID_STATUS"

    def __init__(self, entity: str, current: str, requested: str):
        super().__init__(f"{entity} cannot move from {current} to {requested}.")


# ── Integrity ────────────────────────────────────────────────────────────────

class NegativeBalanceError(StorefrontError):
    """Safety net: raised if a mutation would push a balance below zero."""
    code = "NEGATIVE_BALANCE"

    def __init__(self, account_id: str, resulting_balance: Decimal):
        super().__init__(
            f"Transaction rejected: account {account_id} would have a negative balance "
            f"of {resulting_balance}. This is a data-integrity violation."
        )
