"""
Run this script once to create the tables and seed demo data.
Usage:
    set DATABASE_URL=postgresql://...     (defaults to the local SQLite file)
    python seed.py
"""
from decimal import Decimal

from sqlalchemy import func, select

from storefront import ledger
from storefront.database import engine, get_db_context
from storefront.models import Account, Base, CatalogItem, LedgerEntryKind, PaymentProviderConfig

OPENING_BALANCE = Decimal("1000")

print("Creating tables...")
Base.metadata.create_all(bind=engine)

with get_db_context() as db:
    # Skip if already seeded
    if db.execute(select(func.count(CatalogItem.id))).scalar() > 0:
        print("Database already seeded. Skipping.")
        raise SystemExit(0)

    print("Seeding catalog items...")
    db.add_all([
        CatalogItem(name="Genshin Impact: 6480 Genesis Crystals", price=Decimal("7990"), stock_quantity=50),
        CatalogItem(name="PUBG Mobile: 660 UC", price=Decimal("899"), stock_quantity=200),
        CatalogItem(name="Steam gift card 1000 RUB", price=Decimal("1050"), stock_quantity=100),
        CatalogItem(name="App Store gift card 500 RUB", price=Decimal("530"), stock_quantity=100),
        CatalogItem(name="VPN subscription, 1 month", price=Decimal("299"), stock_quantity=500),
        CatalogItem(name="VPN subscription, 12 months", price=Decimal("2490"), stock_quantity=0),
    ])

    print("Seeding accounts...")
    accounts = [
        Account(username="alice", email="alice@example.com"),
        Account(username="bob", email="bob@example.com"),
        Account(username="charlie", email="charlie@example.com"),
    ]
    db.add_all(accounts)
    db.flush()

    print("Writing opening balances...")
    for account in accounts:
        ledger.credit(db, account.id, OPENING_BALANCE, "Opening balance", kind=LedgerEntryKind.BONUS)

    print("Seeding payment provider config...")
    db.add(PaymentProviderConfig(
        name="test",
        display_name="Test provider",
        is_enabled=True,
        priority=1000,
        is_test_mode=True,
        min_amount=Decimal("10"),
        max_amount=Decimal("100000"),
    ))

print("Seed complete.")
