"""
Test payment provider for development and automated tests.

Approves payments without moving real money. With auto-completion on (the
default) a deposit is COMPLETED the moment it is created; with it off the
payment stays PENDING until a webhook reports the outcome:

    POST /api/webhooks/test
    X-Test-Signature: <hex HMAC-SHA256 of the raw body>   (only if a secret is set)

    {"transaction_id": "TEST-...", "status": "COMPLETED", "amount": "200.00"}
"""
import hashlib
import hmac
import json
import threading
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional, Tuple

import structlog

from storefront.config import settings
from storefront.models import PaymentMethod, PaymentStatus
from storefront.providers import (
    PaymentProvider,
    PaymentRequest,
    PaymentResult,
    PaymentStatusResult,
    WebhookValidationResult,
)

log = structlog.get_logger(component="test_provider")

SIGNATURE_HEADER = "x-test-signature"
MAX_TRACKED_PAYMENTS = 10_000


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%d%H%M%S")


class StubPaymentProvider(PaymentProvider):
    name = "test"
    display_name = "Test provider"
    supported_methods = (
        PaymentMethod.CARD,
        PaymentMethod.SBP,
        PaymentMethod.YOOMONEY,
        PaymentMethod.BALANCE,
    )
    supports_refund = True
    default_priority = 1000   # real providers win when they are switched on

    def __init__(
        self,
        enabled: Optional[bool] = None,
        auto_complete: Optional[bool] = None,
        webhook_secret: Optional[str] = None,
        max_amount: Decimal = Decimal("100000"),
    ):
        self._enabled = settings.TEST_PROVIDER_ENABLED if enabled is None else enabled
        self.auto_complete = (
            settings.TEST_PROVIDER_AUTO_COMPLETE if auto_complete is None else auto_complete
        )
        self.webhook_secret = (
            settings.TEST_PROVIDER_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        )
        self.max_amount = max_amount
        self._payments: "OrderedDict[str, Tuple[PaymentStatus, Decimal]]" = OrderedDict()
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return self._enabled

    def create_payment(
        self, request: PaymentRequest, cancel: Optional[threading.Event] = None
    ) -> PaymentResult:
        log.info(
            "create_payment",
            account_id=str(request.account_id),
            amount=str(request.amount),
            currency=request.currency,
        )
        if cancel is not None and cancel.is_set():
            return PaymentResult.failed("Payment request was cancelled.", "CANCELLED")
        if request.amount <= 0:
            return PaymentResult.failed("Amount must be greater than zero.", "INVALID_AMOUNT")
        if request.amount > self.max_amount:
            return PaymentResult.failed(f"Maximum amount is {self.max_amount}.", "INVALID_AMOUNT")
        if request.method not in self.supported_methods:
            return PaymentResult.failed("Payment method is not supported.", "METHOD_UNAVAILABLE")

        transaction_id = f"TEST-{_timestamp()}-{uuid.uuid4().hex}"[:32]
        status = PaymentStatus.COMPLETED if self.auto_complete else PaymentStatus.PENDING

        result = PaymentResult.successful(
            transaction_id=transaction_id,
            redirect_url=request.success_url or "/account/deposit?success=true",
            provider_transaction_id=f"PROV-{uuid.uuid4().hex}"[:20],
            status=status,
        )
        result.provider_data = {
            "test_mode": "true",
            "auto_approved": "true" if self.auto_complete else "false",
        }
        with self._lock:
            self._payments[transaction_id] = (status, request.amount)
            while len(self._payments) > MAX_TRACKED_PAYMENTS:
                self._payments.popitem(last=False)

        log.info("payment_created", transaction_id=transaction_id, status=status.value)
        return result

    def get_payment_status(
        self, transaction_id: str, cancel: Optional[threading.Event] = None
    ) -> PaymentStatusResult:
        with self._lock:
            status, amount = self._payments.get(
                transaction_id, (PaymentStatus.COMPLETED, Decimal("0"))
            )
        return PaymentStatusResult(
            transaction_id=transaction_id,
            status=status,
            amount=amount,
            message="Test payment",
        )

    def validate_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookValidationResult:
        if self.webhook_secret:
            signature = {k.lower(): v for k, v in headers.items()}.get(SIGNATURE_HEADER)
            expected = sign_payload(self.webhook_secret, body)
            if not signature or not hmac.compare_digest(expected, signature):
                return WebhookValidationResult.invalid("Invalid signature")

        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            return WebhookValidationResult.invalid("Invalid JSON")
        if not isinstance(payload, dict):
            return WebhookValidationResult.invalid("Invalid JSON")

        transaction_id = payload.get("transaction_id")
        if not transaction_id:
            return WebhookValidationResult.invalid("Missing transaction_id")

        status = None
        if payload.get("status") is not None:
            try:
                status = PaymentStatus(str(payload["status"]).upper())
            except ValueError:
                return WebhookValidationResult.invalid(f"Unknown status: {payload['status']}")

        amount = None
        if payload.get("amount") is not None:
            try:
                amount = Decimal(str(payload["amount"]))
            except InvalidOperation:
                return WebhookValidationResult.invalid("Invalid amount")
            if not amount.is_finite():
                return WebhookValidationResult.invalid("Invalid amount")

        return WebhookValidationResult.valid(
            transaction_id=str(transaction_id),
            status=status,
            amount=amount,
            raw_data=body.decode("utf-8"),
        )

    def refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PaymentResult:
        log.info(
            "refund",
            transaction_id=transaction_id,
            amount=str(amount) if amount is not None else "full",
        )
        if cancel is not None and cancel.is_set():
            return PaymentResult.failed("Refund request was cancelled.", "CANCELLED")

        refund_id = f"REFUND-{_timestamp()}-{uuid.uuid4().hex}"[:32]
        with self._lock:
            known = self._payments.get(transaction_id)
            if known is not None:
                self._payments[transaction_id] = (PaymentStatus.REFUNDED, known[1])
        return PaymentResult.successful(refund_id, status=PaymentStatus.REFUNDED)
