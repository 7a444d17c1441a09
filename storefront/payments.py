"""
Payment orchestrator: balance deposits through external providers.

A deposit is created at the provider first (outside any database
transaction), then mirrored into a ``PaymentTransaction`` row. Money reaches
the balance only through ``complete_payment``, which credits the ledger at
most once per transaction no matter how many times it is called: the
synchronous path, a provider webhook and an admin confirmation may all race
for the same payment.
"""
import json
import threading
from decimal import Decimal, InvalidOperation
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront import ledger
from storefront.config import settings
from storefront.database import unit_of_work
from storefront.exceptions import (
    InvalidStatusTransitionError,
    PaymentNotFoundError,
    StorefrontError,
)
from storefront.models import (
    Account,
    LedgerEntry,
    LedgerEntryKind,
    PaymentMethod,
    PaymentStatus,
    PaymentTransaction,
    utcnow,
)
from storefront.providers import (
    PaymentProviderFactory,
    PaymentRequest,
    PaymentResult,
    PaymentStatusResult,
)

log = structlog.get_logger(component="payments")

DEPOSIT_DESCRIPTION = "Balance top-up"
PROVIDER_FAILURE_MESSAGE = "The payment provider is unavailable. Please try again later."

# A payment in one of these states can never be credited
_NOT_CREDITABLE = frozenset({
    PaymentStatus.FAILED,
    PaymentStatus.CANCELLED,
    PaymentStatus.EXPIRED,
    PaymentStatus.REFUNDED,
})


# ──────────────────────────────────────────────────────────────────────────────
# Lookups
# ──────────────────────────────────────────────────────────────────────────────

def find_transaction(db: Session, reference: str) -> Optional[PaymentTransaction]:
    """Match on our transaction id first, then on the provider-side id."""
    tx = db.execute(
        select(PaymentTransaction).where(PaymentTransaction.transaction_id == reference)
    ).scalar_one_or_none()
    if tx is not None:
        return tx
    return db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.provider_transaction_id == reference)
        .order_by(PaymentTransaction.created_at)
        .limit(1)
    ).scalar_one_or_none()


def lock_transaction(db: Session, transaction_id: str) -> PaymentTransaction:
    tx = db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.transaction_id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if tx is None:
        raise PaymentNotFoundError(transaction_id)
    return tx


def _ledger_entry(db: Session, payment_pk, kind: LedgerEntryKind) -> Optional[LedgerEntry]:
    return db.execute(
        select(LedgerEntry).where(
            LedgerEntry.payment_transaction_id == payment_pk,
            LedgerEntry.kind == kind.value,
        )
    ).scalar_one_or_none()


def _dump(data) -> Optional[str]:
    return json.dumps(data) if data else None


# ──────────────────────────────────────────────────────────────────────────────
# Deposits
# ──────────────────────────────────────────────────────────────────────────────

def create_deposit(
    db: Session,
    factory: PaymentProviderFactory,
    account_id,
    amount,
    method,
    client_ip: Optional[str] = None,
    cancel: Optional[threading.Event] = None,
) -> PaymentResult:
    """
    Start a balance top-up through the provider that serves ``method``.

    Provider failures come back untouched and leave nothing behind. A payment
    the provider reports as already COMPLETED is credited before returning.
    """
    log.info(
        "deposit_requested",
        account_id=str(account_id),
        amount=str(amount),
        method=str(getattr(method, "value", method)),
    )

    try:
        amount = Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        return PaymentResult.failed("Amount must be a number.", "INVALID_AMOUNT")
    if not amount.is_finite() or amount <= 0:
        return PaymentResult.failed("Amount must be greater than zero.", "INVALID_AMOUNT")
    if amount > settings.MAX_DEPOSIT_AMOUNT:
        return PaymentResult.failed(
            f"Maximum deposit amount is {settings.MAX_DEPOSIT_AMOUNT:,.0f} {settings.CURRENCY}.",
            "INVALID_AMOUNT",
        )

    try:
        account = ledger.get_active_account(db, account_id)
    except StorefrontError as exc:
        return PaymentResult.failed(str(exc), exc.code)

    try:
        method = PaymentMethod(method)
    except ValueError:
        return PaymentResult.failed("Payment method is temporarily unavailable.", "METHOD_UNAVAILABLE")

    provider = factory.get_provider_for_method(method)
    if provider is None:
        log.warning("no_provider_for_method", method=method.value)
        return PaymentResult.failed("Payment method is temporarily unavailable.", "METHOD_UNAVAILABLE")

    min_amount, max_amount = factory.amount_limits(provider)
    if min_amount is not None and amount < min_amount:
        return PaymentResult.failed(f"Minimum amount for this method is {min_amount:.2f}.", "INVALID_AMOUNT")
    if max_amount is not None and amount > max_amount:
        return PaymentResult.failed(f"Maximum amount for this method is {max_amount:.2f}.", "INVALID_AMOUNT")

    request = PaymentRequest(
        account_id=account.id,
        amount=amount,
        currency=settings.CURRENCY,
        method=method,
        email=account.email,
        description=f"{DEPOSIT_DESCRIPTION} {settings.APP_NAME}",
        success_url=settings.DEPOSIT_SUCCESS_URL,
        cancel_url=settings.DEPOSIT_CANCEL_URL,
        client_ip=client_ip,
    )
    db.rollback()  # no open transaction while the provider is called

    try:
        result = provider.create_payment(request, cancel=cancel)
    except Exception:
        log.exception("provider_error", provider=provider.name, account_id=str(account_id))
        return PaymentResult.failed(PROVIDER_FAILURE_MESSAGE, "PROVIDER_ERROR")

    if not result.success:
        log.warning(
            "deposit_rejected_by_provider",
            provider=provider.name,
            account_id=str(account_id),
            code=result.error_code,
            reason=result.error_message,
        )
        return result

    # Stored as PENDING when the provider already completed it: the status
    # flips together with the ledger credit in complete_payment.
    stored_status = PaymentStatus.PENDING if result.status == PaymentStatus.COMPLETED else result.status
    tx = PaymentTransaction(
        transaction_id=result.transaction_id,
        provider_transaction_id=result.provider_transaction_id,
        account_id=request.account_id,
        provider_name=provider.name,
        method=method.value,
        amount=amount,
        currency=request.currency,
        status=stored_status.value,
        description=request.description,
        client_ip=client_ip,
        provider_data=_dump(result.provider_data),
        metadata_=_dump(request.metadata),
    )
    try:
        with unit_of_work(db):
            db.add(tx)
    except Exception:
        log.exception(
            "payment_not_recorded",
            provider=provider.name,
            transaction_id=result.transaction_id,
        )
        return PaymentResult.failed(PROVIDER_FAILURE_MESSAGE, "PAYMENT_FAILED")

    log.info(
        "payment_transaction_created",
        transaction_id=result.transaction_id,
        provider=provider.name,
        status=result.status.value,
        amount=str(amount),
    )

    if result.status == PaymentStatus.COMPLETED:
        if not complete_payment(db, result.transaction_id):
            log.error("synchronous_completion_failed", transaction_id=result.transaction_id)
            return result.model_copy(update={"status": PaymentStatus.PENDING})

    return result


# ──────────────────────────────────────────────────────────────────────────────
# Completion
# ──────────────────────────────────────────────────────────────────────────────

def _complete_locked(db: Session, transaction_id: str) -> bool:
    tx = db.execute(
        select(PaymentTransaction)
        .where(PaymentTransaction.transaction_id == transaction_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if tx is None:
        log.warning("payment_not_found", transaction_id=transaction_id)
        return False

    status = PaymentStatus(tx.status)
    if status in _NOT_CREDITABLE:
        log.warning("payment_not_creditable", transaction_id=transaction_id, status=status.value)
        return False

    now = utcnow()
    if _ledger_entry(db, tx.id, LedgerEntryKind.DEPOSIT) is not None:
        if status != PaymentStatus.COMPLETED:
            tx.status = PaymentStatus.COMPLETED.value
            tx.completed_at = tx.completed_at or now
            tx.updated_at = now
        log.info("payment_already_completed", transaction_id=transaction_id)
        return True

    tx.status = PaymentStatus.COMPLETED.value
    tx.completed_at = now
    tx.updated_at = now
    ledger.credit(
        db,
        tx.account_id,
        tx.amount,
        description=f"{DEPOSIT_DESCRIPTION} [{tx.transaction_id}]",
        kind=LedgerEntryKind.DEPOSIT,
        payment_transaction_id=tx.id,
        require_active=False,
    )
    db.flush()
    log.info(
        "payment_completed",
        transaction_id=transaction_id,
        account_id=str(tx.account_id),
        amount=str(tx.amount),
    )
    return True


def complete_payment(db: Session, transaction_id: str) -> bool:
    """
    Mark a payment COMPLETED and credit its amount to the payer, once.

    Returns True when the payment is (now or already) credited, False for an
    unknown transaction or one that ended without money arriving.
    """
    try:
        with unit_of_work(db):
            return _complete_locked(db, transaction_id)
    except IntegrityError:
        # A concurrent completion inserted the credit first
        tx = find_transaction(db, transaction_id)
        credited = tx is not None and _ledger_entry(db, tx.id, LedgerEntryKind.DEPOSIT) is not None
        log.info("payment_completion_raced", transaction_id=transaction_id, credited=credited)
        return credited
    except StorefrontError as exc:
        log.error("payment_completion_rejected", transaction_id=transaction_id, code=exc.code, reason=str(exc))
        return False
    except Exception:
        log.exception("payment_completion_failed", transaction_id=transaction_id)
        return False


# ──────────────────────────────────────────────────────────────────────────────
# Status & refunds
# ──────────────────────────────────────────────────────────────────────────────

def get_payment_status(db: Session, transaction_id: str) -> Optional[PaymentStatusResult]:
    """Stored state of a payment; None when we have never seen it."""
    tx = find_transaction(db, transaction_id)
    if tx is None:
        return None
    return PaymentStatusResult(
        transaction_id=tx.transaction_id,
        status=PaymentStatus(tx.status),
        amount=tx.amount,
        currency=tx.currency,
        updated_at=tx.updated_at,
        message=tx.error_message,
    )


def refund_payment(
    db: Session,
    factory: PaymentProviderFactory,
    transaction_id: str,
    amount=None,
    cancel: Optional[threading.Event] = None,
) -> PaymentResult:
    """
    Send a completed deposit back to the payer.

    The provider refund happens first; the COMPLETED → REFUNDED move and the
    REFUND debit are then applied together in one unit of work.
    """
    tx = find_transaction(db, transaction_id)
    if tx is None:
        return PaymentResult.failed(f"Payment transaction not found: {transaction_id}", "PAYMENT_NOT_FOUND")
    if tx.status != PaymentStatus.COMPLETED.value:
        return PaymentResult.failed(
            f"Only completed payments can be refunded (status: {tx.status}).", "INVALID_STATUS"
        )

    provider = factory.get_provider(tx.provider_name)
    if provider is None or not provider.supports_refund:
        return PaymentResult.failed("Refunds are not supported for this payment.", "REFUND_UNSUPPORTED")

    try:
        refund_amount = Decimal(tx.amount) if amount is None else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        return PaymentResult.failed("Amount must be a number.", "INVALID_AMOUNT")
    if not refund_amount.is_finite() or refund_amount <= 0 or refund_amount > tx.amount:
        return PaymentResult.failed("Refund amount must be between 0 and the paid amount.", "INVALID_AMOUNT")

    account = db.get(Account, tx.account_id)
    if account is not None and account.balance < refund_amount:
        return PaymentResult.failed(
            f"Insufficient funds. Required: {refund_amount:.2f}, available: {account.balance:.2f}.",
            "INSUFFICIENT_FUNDS",
        )

    internal_id = tx.transaction_id
    provider_reference = tx.provider_transaction_id or tx.transaction_id
    db.rollback()

    try:
        result = provider.refund(
            provider_reference,
            amount=None if amount is None else refund_amount,
            cancel=cancel,
        )
    except Exception:
        log.exception("provider_refund_error", provider=provider.name, transaction_id=internal_id)
        return PaymentResult.failed(PROVIDER_FAILURE_MESSAGE, "PROVIDER_ERROR")

    if not result.success:
        log.warning(
            "refund_rejected_by_provider",
            provider=provider.name,
            transaction_id=internal_id,
            code=result.error_code,
        )
        return result

    try:
        with unit_of_work(db):
            locked = lock_transaction(db, internal_id)
            current = PaymentStatus(locked.status)
            if not current.can_transition_to(PaymentStatus.REFUNDED):
                raise InvalidStatusTransitionError("Payment", current.value, PaymentStatus.REFUNDED.value)
            ledger.debit(
                db,
                locked.account_id,
                refund_amount,
                description=f"Deposit refund [{internal_id}]",
                kind=LedgerEntryKind.REFUND,
                payment_transaction_id=locked.id,
                require_active=False,
            )
            locked.status = PaymentStatus.REFUNDED.value
            locked.updated_at = utcnow()
    except StorefrontError as exc:
        # Provider already returned the money; needs manual follow-up
        log.error("refund_not_recorded", transaction_id=internal_id, code=exc.code, reason=str(exc))
        return PaymentResult.failed(str(exc), exc.code)
    except IntegrityError:
        log.error("refund_not_recorded", transaction_id=internal_id, code="ALREADY_REFUNDED")
        return PaymentResult.failed("Payment has already been refunded.", "INVALID_STATUS")

    log.info("payment_refunded", transaction_id=internal_id, amount=str(refund_amount))
    return result
