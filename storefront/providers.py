"""
Payment provider abstraction.

A provider is an external money-in integration (card acquirer, wallet, SBP,
...). Each one implements ``PaymentProvider``; the set of implementations is a
plain registry built once at process start, and ``PaymentProviderFactory``
combines that registry with the admin-managed ``payment_provider_configs``
rows, which are re-read for every request so toggling a provider takes
effect immediately.
"""
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Mapping, Optional, Tuple
from uuid import UUID

import structlog
from pydantic import BaseModel, Field, computed_field
from sqlalchemy import select
from sqlalchemy.orm import Session

from storefront.models import (
    PaymentMethod,
    PaymentProviderConfig,
    PaymentStatus,
    utcnow,
)

log = structlog.get_logger(component="provider_factory")


# ──────────────────────────────────────────────────────────────────────────────
# Provider-agnostic request / result models
# ──────────────────────────────────────────────────────────────────────────────

class PaymentRequest(BaseModel):
    account_id: UUID
    amount: Decimal
    currency: str = "RUB"
    method: PaymentMethod
    email: Optional[str] = None
    description: Optional[str] = None
    order_id: Optional[UUID] = None
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    webhook_url: Optional[str] = None
    metadata: Optional[Dict[str, str]] = None
    client_ip: Optional[str] = None


class PaymentResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    redirect_url: Optional[str] = None
    status: PaymentStatus = PaymentStatus.PENDING
    error_message: Optional[str] = None
    error_code: Optional[str] = None
    provider_data: Optional[Dict[str, str]] = None

    @classmethod
    def successful(
        cls,
        transaction_id: str,
        redirect_url: Optional[str] = None,
        provider_transaction_id: Optional[str] = None,
        status: PaymentStatus = PaymentStatus.PENDING,
    ) -> "PaymentResult":
        return cls(
            success=True,
            transaction_id=transaction_id,
            provider_transaction_id=provider_transaction_id,
            redirect_url=redirect_url,
            status=status,
        )

    @classmethod
    def failed(cls, error_message: str, error_code: Optional[str] = None) -> "PaymentResult":
        return cls(
            success=False,
            error_message=error_message,
            error_code=error_code,
            status=PaymentStatus.FAILED,
        )


class PaymentStatusResult(BaseModel):
    transaction_id: str
    status: PaymentStatus
    amount: Decimal = Decimal("0")
    currency: str = "RUB"
    updated_at: datetime = Field(default_factory=utcnow)
    message: Optional[str] = None
    provider_data: Optional[Dict[str, str]] = None

    @computed_field
    @property
    def is_finalized(self) -> bool:
        return self.status.is_final


class WebhookValidationResult(BaseModel):
    is_valid: bool
    transaction_id: Optional[str] = None
    new_status: Optional[PaymentStatus] = None
    amount: Optional[Decimal] = None
    error_message: Optional[str] = None
    raw_data: Optional[str] = None

    @classmethod
    def valid(
        cls,
        transaction_id: str,
        status: Optional[PaymentStatus],
        amount: Optional[Decimal] = None,
        raw_data: Optional[str] = None,
    ) -> "WebhookValidationResult":
        return cls(
            is_valid=True,
            transaction_id=transaction_id,
            new_status=status,
            amount=amount,
            raw_data=raw_data,
        )

    @classmethod
    def invalid(cls, error_message: str) -> "WebhookValidationResult":
        return cls(is_valid=False, error_message=error_message)


# Provider error codes whose messages are written for end users
SAFE_PROVIDER_ERROR_CODES = frozenset({
    "INVALID_AMOUNT",
    "METHOD_UNAVAILABLE",
    "ACCOUNT_NOT_FOUND",
    "CANCELLED",
    "DECLINED",
    "INSUFFICIENT_FUNDS",
    "INVALID_STATUS",
    "PAYMENT_NOT_FOUND",
    "REFUND_UNSUPPORTED",
})


# ──────────────────────────────────────────────────────────────────────────────
# Provider interface
# ──────────────────────────────────────────────────────────────────────────────

class PaymentProvider(ABC):
    """
    Contract every money-in integration implements.

    Outbound calls accept ``cancel``: once the event is set the provider
    abandons the call and answers with a failed ``CANCELLED`` result.
    """

    name: str = ""
    display_name: str = ""
    supported_methods: Tuple[PaymentMethod, ...] = ()
    supports_refund: bool = False
    default_priority: int = 100

    @property
    def enabled(self) -> bool:
        return True

    @abstractmethod
    def create_payment(
        self, request: PaymentRequest, cancel: Optional[threading.Event] = None
    ) -> PaymentResult:
        ...

    @abstractmethod
    def get_payment_status(
        self, transaction_id: str, cancel: Optional[threading.Event] = None
    ) -> PaymentStatusResult:
        ...

    @abstractmethod
    def validate_webhook(self, headers: Mapping[str, str], body: bytes) -> WebhookValidationResult:
        ...

    @abstractmethod
    def refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PaymentResult:
        ...

    def __repr__(self):
        return f"<PaymentProvider {self.name}>"


def build_registry(providers: Iterable[PaymentProvider]) -> Dict[str, PaymentProvider]:
    """Name → provider lookup table, built once at start-up."""
    registry: Dict[str, PaymentProvider] = {}
    for provider in providers:
        key = provider.name.lower()
        if key in registry:
            raise ValueError(f"Duplicate payment provider name: {provider.name}")
        registry[key] = provider
    return registry


def load_provider_configs(db: Session) -> Dict[str, PaymentProviderConfig]:
    """Current admin configuration rows, keyed by lower-cased provider name."""
    rows = db.execute(select(PaymentProviderConfig)).scalars().all()
    return {row.name.lower(): row for row in rows}


# ──────────────────────────────────────────────────────────────────────────────
# Factory
# ──────────────────────────────────────────────────────────────────────────────

class PaymentProviderFactory:
    """
    Resolves providers by name or payment method.

    A configuration row, when present, overrides the provider's own enabled
    flag and priority. Candidates are ordered by priority (lower first), then
    by name, so resolution is deterministic.
    """

    def __init__(
        self,
        registry: Mapping[str, PaymentProvider],
        configs: Optional[Mapping[str, PaymentProviderConfig]] = None,
    ):
        self._registry = dict(registry)
        self._configs = dict(configs or {})

    @classmethod
    def from_db(cls, db: Session, registry: Mapping[str, PaymentProvider]) -> "PaymentProviderFactory":
        return cls(registry, load_provider_configs(db))

    def _config(self, provider: PaymentProvider) -> Optional[PaymentProviderConfig]:
        return self._configs.get(provider.name.lower())

    def is_enabled(self, provider: PaymentProvider) -> bool:
        config = self._config(provider)
        return config.is_enabled if config is not None else provider.enabled

    def priority(self, provider: PaymentProvider) -> int:
        config = self._config(provider)
        return config.priority if config is not None else provider.default_priority

    def display_name(self, provider: PaymentProvider) -> str:
        config = self._config(provider)
        return config.display_name if config is not None else provider.display_name

    def amount_limits(self, provider: PaymentProvider) -> Tuple[Optional[Decimal], Optional[Decimal]]:
        config = self._config(provider)
        if config is None:
            return None, None
        return config.min_amount, config.max_amount

    def _ordered(self, providers: Iterable[PaymentProvider]) -> List[PaymentProvider]:
        return sorted(providers, key=lambda p: (self.priority(p), p.name))

    def get_provider(self, provider_name: str) -> Optional[PaymentProvider]:
        """Look up by name regardless of enabled state (webhooks for in-flight payments)."""
        provider = self._registry.get(provider_name.lower())
        if provider is None:
            log.warning("provider_not_found", provider=provider_name)
        return provider

    def get_active_providers(self) -> List[PaymentProvider]:
        return self._ordered(p for p in self._registry.values() if self.is_enabled(p))

    def get_providers_for_method(self, method: PaymentMethod) -> List[PaymentProvider]:
        method = PaymentMethod(method)
        return [p for p in self.get_active_providers() if method in p.supported_methods]

    def get_provider_for_method(self, method: PaymentMethod) -> Optional[PaymentProvider]:
        candidates = self.get_providers_for_method(method)
        return candidates[0] if candidates else None

    def has_provider_for_method(self, method: PaymentMethod) -> bool:
        return self.get_provider_for_method(method) is not None
