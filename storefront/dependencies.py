from functools import lru_cache
from typing import Dict

from fastapi import Depends
from sqlalchemy.orm import Session

from storefront.database import get_db
from storefront.providers import PaymentProvider, PaymentProviderFactory, build_registry
from storefront.stub_provider import StubPaymentProvider


@lru_cache()
def get_provider_registry() -> Dict[str, PaymentProvider]:
    """Provider implementations, created once per process."""
    return build_registry([StubPaymentProvider()])


def get_provider_factory(
    db: Session = Depends(get_db),
    registry: Dict[str, PaymentProvider] = Depends(get_provider_registry),
) -> PaymentProviderFactory:
    # Config rows are re-read per request so admin toggles apply immediately
    return PaymentProviderFactory.from_db(db, registry)
