"""
Webhook reconciler: applies provider callbacks to stored payments.

Providers deliver callbacks at least once, out of order and sometimes for
payments we already settled, so every step here is safe to repeat. A
COMPLETED report goes through ``payments.complete_payment`` and can credit
the balance at most once; other reports only move the status forward along
the payment state machine.
"""
from decimal import Decimal
from typing import Mapping

import structlog
from sqlalchemy.orm import Session

from storefront import ledger, payments
from storefront.database import unit_of_work
from storefront.exceptions import InvalidStatusTransitionError, StorefrontError
from storefront.models import LedgerEntryKind, PaymentStatus, utcnow
from storefront.providers import PaymentProviderFactory

log = structlog.get_logger(component="webhooks")


def _apply_status(db: Session, transaction_id: str, new_status: PaymentStatus, provider_name: str) -> bool:
    with unit_of_work(db):
        tx = payments.lock_transaction(db, transaction_id)
        current = PaymentStatus(tx.status)
        if current == new_status:
            log.info("webhook_replayed", transaction_id=transaction_id, status=current.value)
            return True
        if not current.can_transition_to(new_status):
            raise InvalidStatusTransitionError("Payment", current.value, new_status.value)

        if new_status == PaymentStatus.REFUNDED:
            # Refund initiated on the provider side; take the money back off the balance
            ledger.debit(
                db,
                tx.account_id,
                tx.amount,
                description=f"Deposit refund [{tx.transaction_id}]",
                kind=LedgerEntryKind.REFUND,
                payment_transaction_id=tx.id,
                require_active=False,
            )

        now = utcnow()
        tx.status = new_status.value
        tx.updated_at = now
        if new_status.is_final:
            tx.completed_at = now
        if new_status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.EXPIRED):
            tx.error_message = f"Reported {new_status.value} by {provider_name}"

    log.info(
        "payment_status_updated",
        transaction_id=transaction_id,
        previous=current.value,
        status=new_status.value,
    )
    return True


def handle_webhook(
    db: Session,
    factory: PaymentProviderFactory,
    provider_name: str,
    headers: Mapping[str, str],
    body: bytes,
) -> bool:
    """
    Validate and apply one provider callback.

    Returns True when the callback was accepted (including harmless replays)
    and False when it was rejected; a rejected callback changes nothing.
    """
    log.info("webhook_received", provider=provider_name, size=len(body))

    provider = factory.get_provider(provider_name)
    if provider is None:
        log.warning("webhook_unknown_provider", provider=provider_name)
        return False

    try:
        validation = provider.validate_webhook(headers, body)
    except Exception:
        log.exception("webhook_validation_error", provider=provider_name)
        return False

    if not validation.is_valid:
        log.warning("webhook_invalid", provider=provider_name, reason=validation.error_message)
        return False

    if not validation.transaction_id:
        log.warning("webhook_missing_transaction_id", provider=provider_name)
        return False

    tx = payments.find_transaction(db, validation.transaction_id)
    if tx is None:
        log.warning("webhook_transaction_not_found", provider=provider_name,
                    transaction_id=validation.transaction_id)
        return False

    if tx.provider_name.lower() != provider.name.lower():
        log.warning("webhook_provider_mismatch", provider=provider_name,
                    transaction_id=tx.transaction_id, expected=tx.provider_name)
        return False

    if validation.amount is not None and Decimal(validation.amount) != Decimal(tx.amount):
        log.warning(
            "webhook_amount_mismatch",
            transaction_id=tx.transaction_id,
            reported=str(validation.amount),
            stored=str(tx.amount),
        )
        return False

    if validation.new_status is None:
        log.info("webhook_without_status", transaction_id=tx.transaction_id)
        return True

    transaction_id = tx.transaction_id
    new_status = PaymentStatus(validation.new_status)
    if new_status == PaymentStatus.COMPLETED:
        return payments.complete_payment(db, transaction_id)

    try:
        return _apply_status(db, transaction_id, new_status, provider.name)
    except InvalidStatusTransitionError as exc:
        log.warning("webhook_transition_refused", transaction_id=transaction_id, reason=str(exc))
        return False
    except StorefrontError as exc:
        log.error("webhook_rejected", transaction_id=transaction_id, code=exc.code, reason=str(exc))
        return False
    except Exception:
        log.exception("webhook_failed", transaction_id=transaction_id)
        return False
