"""
Shared fixtures: a fresh SQLite database file per test, seeded through the
ledger so every opening balance is backed by a ledger entry.

A file (not ``:memory:``) database lets several sessions, and the threads in
the race tests, see each other's commits.
"""
import os
import uuid
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.orm import sessionmaker

from storefront import ledger
from storefront.database import build_engine, unit_of_work
from storefront.models import Account, Base, CatalogItem, LedgerEntryKind
from storefront.providers import PaymentProviderFactory, build_registry
from storefront.stub_provider import StubPaymentProvider

WEBHOOK_SECRET = "whsec_test"


@pytest.fixture()
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'storefront.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture()
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


def make_account(db, username, balance=Decimal("0"), is_active=True):
    account = Account(id=uuid.uuid4(), username=username, email=f"{username}@test.com",
                      is_active=is_active)
    with unit_of_work(db):
        db.add(account)
        db.flush()
        if balance > 0:
            ledger.credit(db, account.id, balance, "Opening balance",
                          kind=LedgerEntryKind.BONUS, require_active=False)
    return account.id


def make_item(db, name, price, stock, is_active=True):
    item = CatalogItem(id=uuid.uuid4(), name=name, price=Decimal(price),
                       stock_quantity=stock, is_active=is_active)
    with unit_of_work(db):
        db.add(item)
    return item.id


@pytest.fixture()
def seed_data(db_session):
    """Two buyers and a small catalog."""
    return {
        "alice": make_account(db_session, "alice", Decimal("500.00")),
        "bob": make_account(db_session, "bob", Decimal("50.00")),
        "inactive": make_account(db_session, "mallory", Decimal("100.00"), is_active=False),
        "gift_card": make_item(db_session, "Steam gift card 100", "100.00", 3),
        "vpn": make_item(db_session, "VPN, 1 month", "25.00", 10),
        "sold_out": make_item(db_session, "Gems x6480", "100.00", 0),
        "hidden": make_item(db_session, "Retired pack", "10.00", 5, is_active=False),
    }


@pytest.fixture()
def stub_provider():
    """Synchronous test provider, webhook signatures required."""
    return StubPaymentProvider(enabled=True, auto_complete=True, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture()
def pending_provider():
    """Test provider that leaves payments PENDING until a webhook arrives."""
    return StubPaymentProvider(enabled=True, auto_complete=False, webhook_secret=WEBHOOK_SECRET)


@pytest.fixture()
def factory(stub_provider):
    return PaymentProviderFactory(build_registry([stub_provider]))


@pytest.fixture()
def pending_factory(pending_provider):
    return PaymentProviderFactory(build_registry([pending_provider]))
