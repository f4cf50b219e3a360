"""Credit balance mutations.

Every balance change is a single atomic SQL expression on ``user_account.credits``;
nothing here reads a balance, computes a new value and writes it back. Each
change is mirrored by a ``credit_transaction`` row so refunds can be made
idempotent and stale debits can be reconciled.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from db.models import CreditTransaction, UserAccount

from .costs import get_cost

logger = logging.getLogger(__name__)

INSUFFICIENT_CREDITS = "Insufficient credits"
USER_NOT_FOUND = "User not found"


@dataclass(frozen=True)
class DebitResult:
    success: bool
    operation: str
    amount: int
    balance_after: int | None = None
    error: str | None = None
    transaction_id: UUID | None = None


@dataclass(frozen=True)
class RefundResult:
    refunded: bool
    balance_after: int | None = None
    transaction_id: UUID | None = None


def get_balance(session: Session, user_id: str) -> int | None:
    return session.execute(
        select(UserAccount.credits).where(UserAccount.id == user_id)
    ).scalar_one_or_none()


def try_debit(
    session: Session,
    *,
    user_id: str,
    operation: str,
    note: str | None = None,
) -> DebitResult:
    """Charge the fixed cost of ``operation`` to ``user_id``.

    The decrement only applies when the balance covers the cost, so a failed
    debit never leaves a negative balance behind and needs no compensation.
    A successful debit is committed immediately as a ``pending`` transaction;
    the caller settles or refunds it once the metered work has been attempted.
    """
    operation = operation.upper()
    amount = get_cost(operation)
    result = session.execute(
        update(UserAccount)
        .where(UserAccount.id == user_id, UserAccount.credits >= amount)
        .values(credits=UserAccount.credits - amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        balance = get_balance(session, user_id)
        if balance is None:
            logger.info("debit rejected user=%s operation=%s reason=user_not_found", user_id, operation)
            return DebitResult(success=False, operation=operation, amount=amount, error=USER_NOT_FOUND)
        logger.info(
            "debit rejected user=%s operation=%s amount=%s balance=%s",
            user_id,
            operation,
            amount,
            balance,
        )
        return DebitResult(
            success=False,
            operation=operation,
            amount=amount,
            balance_after=balance,
            error=INSUFFICIENT_CREDITS,
        )

    balance = get_balance(session, user_id)
    transaction_id = uuid4()
    session.add(
        CreditTransaction(
            id=transaction_id,
            user_id=user_id,
            kind="debit",
            operation=operation,
            amount=-amount,
            balance_after=balance,
            status="pending",
            note=note,
        )
    )
    session.commit()
    logger.info(
        "debit applied user=%s operation=%s amount=%s balance=%s tx=%s",
        user_id,
        operation,
        amount,
        balance,
        transaction_id,
    )
    return DebitResult(
        success=True,
        operation=operation,
        amount=amount,
        balance_after=balance,
        transaction_id=transaction_id,
    )


def settle_debit(session: Session, transaction_id: UUID, *, job_id: UUID | None = None) -> bool:
    """Mark a pending debit as spent. Joins the caller's transaction; does not commit."""
    values: dict = {"status": "settled"}
    if job_id is not None:
        values["job_id"] = job_id
    result = session.execute(
        update(CreditTransaction)
        .where(
            CreditTransaction.id == transaction_id,
            CreditTransaction.kind == "debit",
            CreditTransaction.status == "pending",
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def refund_debit(session: Session, transaction_id: UUID, *, reason: str | None = None) -> RefundResult:
    """Return the credits of a pending debit to its user, at most once.

    The debit row is claimed with a conditional ``pending -> refunded`` update;
    only the caller that wins the claim increments the balance. Commits.
    """
    debit = session.get(CreditTransaction, transaction_id)
    if debit is None or debit.kind != "debit":
        raise LookupError(f"Debit transaction not found: {transaction_id}")

    claimed = session.execute(
        update(CreditTransaction)
        .where(CreditTransaction.id == transaction_id, CreditTransaction.status == "pending")
        .values(status="refunded")
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        session.rollback()
        logger.info("refund skipped tx=%s reason=not_pending", transaction_id)
        return RefundResult(refunded=False)

    amount = -debit.amount
    session.execute(
        update(UserAccount)
        .where(UserAccount.id == debit.user_id)
        .values(credits=UserAccount.credits + amount)
        .execution_options(synchronize_session=False)
    )
    balance = get_balance(session, debit.user_id)
    refund_id = uuid4()
    session.add(
        CreditTransaction(
            id=refund_id,
            user_id=debit.user_id,
            kind="refund",
            operation=debit.operation,
            amount=amount,
            balance_after=balance,
            status="settled",
            parent_id=transaction_id,
            job_id=debit.job_id,
            note=reason,
        )
    )
    session.commit()
    logger.info(
        "refund applied user=%s operation=%s amount=%s balance=%s debit_tx=%s",
        debit.user_id,
        debit.operation,
        amount,
        balance,
        transaction_id,
    )
    return RefundResult(refunded=True, balance_after=balance, transaction_id=refund_id)


def grant_credits(session: Session, *, user_id: str, amount: int, note: str | None = None) -> int:
    """Add purchased or granted credits and return the new balance. Commits."""
    if amount <= 0:
        raise ValueError("Grant amount must be a positive integer")
    result = session.execute(
        update(UserAccount)
        .where(UserAccount.id == user_id)
        .values(credits=UserAccount.credits + amount)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        session.rollback()
        raise LookupError(USER_NOT_FOUND)
    balance = get_balance(session, user_id)
    session.add(
        CreditTransaction(
            id=uuid4(),
            user_id=user_id,
            kind="grant",
            amount=amount,
            balance_after=balance,
            status="settled",
            note=note,
        )
    )
    session.commit()
    logger.info("grant applied user=%s amount=%s balance=%s", user_id, amount, balance)
    return int(balance)


def stale_pending_debits(session: Session, *, older_than: datetime) -> list[CreditTransaction]:
    return list(
        session.execute(
            select(CreditTransaction)
            .where(
                CreditTransaction.kind == "debit",
                CreditTransaction.status == "pending",
                CreditTransaction.created_at < older_than,
            )
            .order_by(CreditTransaction.created_at)
        ).scalars()
    )
