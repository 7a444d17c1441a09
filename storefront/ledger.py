"""
Ledger / balance store.

Concurrency Strategy
────────────────────
Every mutation re-reads the account row with ``SELECT ... FOR UPDATE`` and
then changes the balance with a guarded ``UPDATE``:

    UPDATE accounts SET balance = balance - :amount
     WHERE id = :id AND balance >= :amount

On PostgreSQL the row lock serialises concurrent writers; on engines without
row locks (SQLite) the WHERE clause still lets only one of two racing debits
succeed. The ``CHECK (balance >= 0)`` constraint stays as the last line of
defence.

Every successful debit/credit appends exactly one ``LedgerEntry`` in the same
transaction, so ``accounts.balance`` always equals the sum of the account's
entries. Nothing in this module commits: the caller owns the unit of work.
"""
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from storefront.exceptions import (
    AccountNotFoundError,
    InsufficientFundsError,
    InvalidRequestError,
    NegativeBalanceError,
)
from storefront.models import Account, LedgerEntry, LedgerEntryKind

log = structlog.get_logger(component="ledger")

ZERO = Decimal("0")


# ──────────────────────────────────────────────────────────────────────────────
# Internal helpers
# ──────────────────────────────────────────────────────────────────────────────

def _require_positive(amount: Decimal) -> Decimal:
    amount = Decimal(amount)
    if not amount.is_finite() or amount <= ZERO:
        raise InvalidRequestError("Amount must be greater than zero.", code="INVALID_AMOUNT")
    return amount


def get_active_account(db: Session, account_id: UUID) -> Account:
    """Fetch and validate an account by ID."""
    account = db.get(Account, account_id)
    if not account or not account.is_active:
        raise AccountNotFoundError(str(account_id))
    return account


def lock_account(db: Session, account_id: UUID, require_active: bool = True) -> Account:
    """
    Acquire a pessimistic row-level lock on the account row and return it with
    freshly loaded state (never a pre-fetched snapshot).
    """
    account = db.execute(
        select(Account)
        .where(Account.id == account_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()

    if account is None or (require_active and not account.is_active):
        raise AccountNotFoundError(str(account_id))
    return account


def _append_entry(
    db: Session,
    account: Account,
    amount: Decimal,
    kind: LedgerEntryKind,
    description: Optional[str],
    order_id: Optional[UUID],
    payment_transaction_id: Optional[UUID],
) -> LedgerEntry:
    db.refresh(account)
    if account.balance < ZERO:
        raise NegativeBalanceError(str(account.id), account.balance)

    entry = LedgerEntry(
        account_id=account.id,
        kind=LedgerEntryKind(kind).value,
        amount=amount,
        balance_after=account.balance,
        account_version=account.version,
        order_id=order_id,
        payment_transaction_id=payment_transaction_id,
        description=description,
    )
    db.add(entry)
    db.flush()  # surface unique-constraint violations inside the caller's transaction
    return entry


# ──────────────────────────────────────────────────────────────────────────────
# Public operations
# ──────────────────────────────────────────────────────────────────────────────

def debit(
    db: Session,
    account_id: UUID,
    amount: Decimal,
    description: Optional[str] = None,
    kind: LedgerEntryKind = LedgerEntryKind.PURCHASE,
    order_id: Optional[UUID] = None,
    payment_transaction_id: Optional[UUID] = None,
    require_active: bool = True,
) -> LedgerEntry:
    """
    Subtract ``amount`` from the account and record the ledger entry.

    Raises InsufficientFundsError, leaving balance and ledger untouched, if
    the debit would drive the balance negative.
    """
    amount = _require_positive(amount)
    account = lock_account(db, account_id, require_active=require_active)

    # Check balance AFTER acquiring lock — no window between read and write
    if account.balance < amount:
        raise InsufficientFundsError(required=amount, available=account.balance)

    result = db.execute(
        update(Account)
        .where(Account.id == account.id, Account.balance >= amount)
        .values(balance=Account.balance - amount, version=Account.version + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        # Another transaction spent the money between our read and our write
        db.refresh(account)
        raise InsufficientFundsError(required=amount, available=account.balance)

    entry = _append_entry(db, account, -amount, kind, description, order_id, payment_transaction_id)
    log.info(
        "balance_debited",
        account_id=str(account.id),
        amount=str(amount),
        kind=entry.kind,
        balance_after=str(entry.balance_after),
    )
    return entry


def credit(
    db: Session,
    account_id: UUID,
    amount: Decimal,
    description: Optional[str] = None,
    kind: LedgerEntryKind = LedgerEntryKind.DEPOSIT,
    order_id: Optional[UUID] = None,
    payment_transaction_id: Optional[UUID] = None,
    require_active: bool = True,
) -> LedgerEntry:
    """Add ``amount`` to the account and record the ledger entry."""
    amount = _require_positive(amount)
    account = lock_account(db, account_id, require_active=require_active)

    db.execute(
        update(Account)
        .where(Account.id == account.id)
        .values(balance=Account.balance + amount, version=Account.version + 1)
        .execution_options(synchronize_session=False)
    )

    entry = _append_entry(db, account, amount, kind, description, order_id, payment_transaction_id)
    log.info(
        "balance_credited",
        account_id=str(account.id),
        amount=str(amount),
        kind=entry.kind,
        balance_after=str(entry.balance_after),
    )
    return entry


def adjust_balance(
    db: Session,
    account_id: UUID,
    amount: Decimal,
    reason: str,
) -> LedgerEntry:
    """
    Admin correction: a positive amount is granted as a BONUS, a negative one
    is taken back as a WITHDRAWAL (refused if the balance cannot cover it).
    """
    amount = Decimal(amount)
    if not amount.is_finite() or amount == ZERO:
        raise InvalidRequestError("Adjustment amount must be a non-zero number.", code="INVALID_AMOUNT")

    description = f"Balance adjustment: {reason}"
    if amount > ZERO:
        return credit(db, account_id, amount, description, kind=LedgerEntryKind.BONUS)
    return debit(db, account_id, -amount, description, kind=LedgerEntryKind.WITHDRAWAL)


# ──────────────────────────────────────────────────────────────────────────────
# Read-only queries
# ──────────────────────────────────────────────────────────────────────────────

def get_balance(db: Session, account_id: UUID) -> Account:
    return get_active_account(db, account_id)


def history(
    db: Session,
    account_id: UUID,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[LedgerEntry], int]:
    """Return paginated ledger entries for an account, newest first."""
    get_active_account(db, account_id)

    total = db.execute(
        select(func.count(LedgerEntry.id)).where(LedgerEntry.account_id == account_id)
    ).scalar()

    entries = db.execute(
        select(LedgerEntry)
        .where(LedgerEntry.account_id == account_id)
        .order_by(LedgerEntry.created_at.desc(), LedgerEntry.account_version.desc())
        .limit(limit)
        .offset(offset)
    ).scalars().all()

    return list(entries), total


def ledger_total(db: Session, account_id: UUID) -> Decimal:
    """Sum of all signed ledger amounts for the account."""
    total = db.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0))
        .where(LedgerEntry.account_id == account_id)
    ).scalar()
    return Decimal(str(total))


def verify_balance(db: Session, account_id: UUID) -> bool:
    """True when the stored balance matches the ledger."""
    account = db.get(Account, account_id)
    if account is None:
        raise AccountNotFoundError(str(account_id))
    db.refresh(account)
    return Decimal(account.balance) == ledger_total(db, account_id)
