"""
Ledger / balance store tests.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import update

from storefront import ledger
from storefront.database import unit_of_work
from storefront.exceptions import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidRequestError,
)
from storefront.models import Account, LedgerEntry, LedgerEntryKind


def _entry_count(db, account_id):
    return db.query(LedgerEntry).filter(LedgerEntry.account_id == account_id).count()


class TestDebit:
    def test_debit_decreases_balance_and_records_entry(self, db_session, seed_data):
        with unit_of_work(db_session):
            entry = ledger.debit(db_session, seed_data["alice"], Decimal("120"), "Test debit")

        assert entry.kind == LedgerEntryKind.PURCHASE.value
        assert entry.amount == Decimal("-120")
        assert entry.balance_after == Decimal("380")
        assert db_session.get(Account, seed_data["alice"]).balance == Decimal("380")

    def test_debit_bumps_version(self, db_session, seed_data):
        before = db_session.get(Account, seed_data["alice"]).version
        with unit_of_work(db_session):
            ledger.debit(db_session, seed_data["alice"], Decimal("1"))
        db_session.expire_all()
        assert db_session.get(Account, seed_data["alice"]).version == before + 1

    def test_insufficient_funds_leaves_state_untouched(self, db_session, seed_data):
        with pytest.raises(InsufficientFundsError) as exc_info:
            with unit_of_work(db_session):
                ledger.debit(db_session, seed_data["bob"], Decimal("100"))

        assert exc_info.value.required == Decimal("100")
        assert exc_info.value.available == Decimal("50")
        assert db_session.get(Account, seed_data["bob"]).balance == Decimal("50")
        assert _entry_count(db_session, seed_data["bob"]) == 1  # opening balance only

    def test_debit_exact_balance_reaches_zero(self, db_session, seed_data):
        with unit_of_work(db_session):
            entry = ledger.debit(db_session, seed_data["bob"], Decimal("50.00"))
        assert entry.balance_after == Decimal("0")

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-10"), Decimal("NaN"), Decimal("sNaN")])
    def test_non_positive_amount_rejected(self, db_session, seed_data, amount):
        with pytest.raises(InvalidRequestError):
            ledger.debit(db_session, seed_data["alice"], amount)

    def test_inactive_account_rejected(self, db_session, seed_data):
        with pytest.raises(AccountNotFoundError):
            ledger.debit(db_session, seed_data["inactive"], Decimal("1"))


class TestCredit:
    def test_credit_increases_balance(self, db_session, seed_data):
        with unit_of_work(db_session):
            entry = ledger.credit(db_session, seed_data["bob"], Decimal("25.50"), "Top-up")

        assert entry.kind == LedgerEntryKind.DEPOSIT.value
        assert entry.amount == Decimal("25.50")
        assert entry.balance_after == Decimal("75.50")

    def test_unknown_account(self, db_session, seed_data):
        with pytest.raises(AccountNotFoundError):
            ledger.credit(db_session, uuid.uuid4(), Decimal("10"))

    def test_credit_inactive_account_when_allowed(self, db_session, seed_data):
        with unit_of_work(db_session):
            entry = ledger.credit(db_session, seed_data["inactive"], Decimal("5"), require_active=False)
        assert entry.balance_after == Decimal("105")


class TestAdjustBalance:
    def test_positive_adjustment_is_bonus(self, db_session, seed_data):
        with unit_of_work(db_session):
            entry = ledger.adjust_balance(db_session, seed_data["bob"], Decimal("10"), "Goodwill")
        assert entry.kind == LedgerEntryKind.BONUS.value
        assert entry.description == "Balance adjustment: Goodwill"

    def test_negative_adjustment_is_withdrawal(self, db_session, seed_data):
        with unit_of_work(db_session):
            entry = ledger.adjust_balance(db_session, seed_data["bob"], Decimal("-20"), "Chargeback")
        assert entry.kind == LedgerEntryKind.WITHDRAWAL.value
        assert entry.amount == Decimal("-20")
        assert entry.balance_after == Decimal("30")

    def test_negative_adjustment_cannot_overdraw(self, db_session, seed_data):
        with pytest.raises(InsufficientFundsError):
            ledger.adjust_balance(db_session, seed_data["bob"], Decimal("-51"), "Too much")

    def test_zero_adjustment_rejected(self, db_session, seed_data):
        with pytest.raises(InvalidRequestError):
            ledger.adjust_balance(db_session, seed_data["bob"], Decimal("0"), "Nothing")

    @pytest.mark.parametrize("amount", [Decimal("NaN"), Decimal("sNaN"), Decimal("-Infinity")])
    def test_non_finite_adjustment_rejected(self, db_session, seed_data, amount):
        with pytest.raises(InvalidRequestError):
            ledger.adjust_balance(db_session, seed_data["bob"], amount, "Broken input")
        assert db_session.get(Account, seed_data["bob"]).balance == Decimal("50")


class TestHistoryAndConsistency:
    def test_history_pagination(self, db_session, seed_data):
        with unit_of_work(db_session):
            for _ in range(4):
                ledger.debit(db_session, seed_data["alice"], Decimal("10"))

        entries, total = ledger.history(db_session, seed_data["alice"], limit=2, offset=0)
        assert total == 5
        assert len(entries) == 2

        rest, _ = ledger.history(db_session, seed_data["alice"], limit=10, offset=2)
        assert len(rest) == 3

    def test_history_newest_first(self, db_session, seed_data):
        for amount in ("1", "2", "3", "4"):
            with unit_of_work(db_session):
                ledger.debit(db_session, seed_data["alice"], Decimal(amount))

        entries, _ = ledger.history(db_session, seed_data["alice"])
        assert [e.amount for e in entries] == [
            Decimal("-4"), Decimal("-3"), Decimal("-2"), Decimal("-1"), Decimal("500"),
        ]

    def test_history_order_stable_within_one_timestamp(self, db_session, seed_data):
        alice = seed_data["alice"]
        with unit_of_work(db_session):
            for amount in ("1", "2", "3"):
                ledger.debit(db_session, alice, Decimal(amount))
            db_session.execute(
                update(LedgerEntry)
                .where(LedgerEntry.account_id == alice)
                .values(created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
            )

        entries, _ = ledger.history(db_session, alice)
        assert [e.amount for e in entries] == [
            Decimal("-3"), Decimal("-2"), Decimal("-1"), Decimal("500"),
        ]
        assert [e.account_version for e in entries] == [4, 3, 2, 1]

    def test_balance_matches_ledger_after_mixed_operations(self, db_session, seed_data):
        alice = seed_data["alice"]
        with unit_of_work(db_session):
            ledger.debit(db_session, alice, Decimal("99.99"))
            ledger.credit(db_session, alice, Decimal("0.01"))
            ledger.adjust_balance(db_session, alice, Decimal("-0.02"), "Rounding")

        assert ledger.ledger_total(db_session, alice) == Decimal("400.00")
        assert ledger.verify_balance(db_session, alice) is True

    def test_failed_unit_of_work_rolls_back_every_entry(self, db_session, seed_data):
        alice = seed_data["alice"]
        with pytest.raises(InsufficientFundsError):
            with unit_of_work(db_session):
                ledger.debit(db_session, alice, Decimal("300"))
                ledger.debit(db_session, alice, Decimal("300"))

        assert db_session.get(Account, alice).balance == Decimal("500")
        assert _entry_count(db_session, alice) == 1
        assert ledger.verify_balance(db_session, alice) is True
