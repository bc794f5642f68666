"""Credit ledger: atomic, optionally idempotent balance adjustments."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.transaction import Transaction
from models.user import User
from services.errors import InsufficientCreditsError, NotFoundError

logger = logging.getLogger(__name__)


async def get_balance(user_id: str, db: AsyncSession) -> int:
    """Read the stored balance, bypassing any identity-mapped User copy."""
    result = await db.execute(select(User.credit_balance).where(User.id == user_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFoundError(f"User {user_id} not found.", context={"user_id": user_id})
    return int(balance)


async def find_transaction_by_key(idempotency_key: str, db: AsyncSession) -> Optional[Transaction]:
    result = await db.execute(select(Transaction).where(Transaction.stripe_id == idempotency_key))
    return result.scalar_one_or_none()


async def apply_delta(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    idempotency_key: Optional[str] = None,
    commit: bool = True,
) -> int:
    """
    Adjust a user's balance by a signed delta and return the new balance.

    The read-modify-write happens in one conditional UPDATE so concurrent
    deltas on the same row serialize in the store. A delta that would take
    the balance below zero matches no row and raises InsufficientCreditsError.

    When ``idempotency_key`` names an existing Transaction the call is a no-op
    returning the current balance. With ``commit=False`` the caller owns the
    unit of work and must commit (or roll back) alongside its own writes.
    """
    change = int(delta)

    if idempotency_key:
        existing = await find_transaction_by_key(idempotency_key, db)
        if existing is not None:
            logger.info("ledger_replay user=%s key=%s", user_id, idempotency_key)
            return await get_balance(user_id, db)

    stmt = (
        update(User)
        .where(User.id == user_id, User.credit_balance + change >= 0)
        .values(credit_balance=User.credit_balance + change, updated_at=func.now())
        .returning(User.credit_balance)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    new_balance = result.scalar_one_or_none()

    if new_balance is None:
        try:
            current = await get_balance(user_id, db)
        finally:
            if commit:
                await db.rollback()
        logger.info(
            "ledger_rejected user=%s delta=%s balance=%s",
            user_id,
            change,
            current,
        )
        raise InsufficientCreditsError(
            f"Insufficient credits. Required: {-change}, available: {current}.",
            context={"required": -change, "available": current},
        )

    if commit:
        await db.commit()
    logger.info(
        "ledger_applied user=%s delta=%s balance_after=%s key=%s",
        user_id,
        change,
        new_balance,
        idempotency_key or "-",
    )
    return int(new_balance)


async def refund(user_id: str, db: AsyncSession, *, amount: int, commit: bool = True) -> int:
    """Compensating credit for a charge whose paid work did not complete."""
    return await apply_delta(user_id, db, delta=abs(int(amount)), commit=commit)
