"""Turns confirmed payment events into exactly-once ledger credits."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models.transaction import Transaction
from models.user import User
from services import ledger
from services.errors import InvalidPurchaseEventError
from services.payments import CHECKOUT_COMPLETED, verify_webhook_event

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseEvent:
    session_id: str
    amount: Decimal
    plan: str
    credits: int
    buyer_id: str


@dataclass(frozen=True)
class SettlementResult:
    transaction: Transaction
    duplicate: bool
    balance_after: int


def serialize_transaction(transaction: Transaction) -> Dict[str, Any]:
    return {
        "id": transaction.id,
        "stripe_id": transaction.stripe_id,
        "amount": float(transaction.amount or 0),
        "plan": transaction.plan,
        "credits": transaction.credits,
        "buyer_id": transaction.buyer_id,
        "created_at": transaction.created_at.isoformat() if transaction.created_at else None,
    }


def parse_purchase_event(event: Dict[str, Any]) -> PurchaseEvent:
    """Extract the purchase fields from a ``checkout.session.completed`` event."""
    data = event.get("data") if isinstance(event.get("data"), dict) else {}
    session = data.get("object") if isinstance(data.get("object"), dict) else None
    if session is None:
        raise InvalidPurchaseEventError("Event has no checkout session object.")

    metadata = session.get("metadata") if isinstance(session.get("metadata"), dict) else {}
    session_id = str(session.get("id") or "").strip()
    buyer_id = str(metadata.get("buyerId") or "").strip()
    if not session_id:
        raise InvalidPurchaseEventError("Checkout session id is missing.")
    if not buyer_id:
        raise InvalidPurchaseEventError("Checkout session has no buyer.", context={"session_id": session_id})

    try:
        credits = int(str(metadata.get("credits") or "0").strip())
        amount = Decimal(int(session.get("amount_total") or 0)) / 100
    except (TypeError, ValueError, InvalidOperation) as exc:
        raise InvalidPurchaseEventError(
            "Checkout session has malformed credits or amount.",
            context={"session_id": session_id},
        ) from exc

    if credits <= 0:
        raise InvalidPurchaseEventError(
            "Purchased credits must be greater than 0.",
            context={"session_id": session_id},
        )

    return PurchaseEvent(
        session_id=session_id,
        amount=amount,
        plan=str(metadata.get("plan") or ""),
        credits=credits,
        buyer_id=buyer_id,
    )


async def _replay(session_id: str, buyer_id: str, db: AsyncSession) -> Optional[SettlementResult]:
    existing = await ledger.find_transaction_by_key(session_id, db)
    if existing is None:
        return None
    logger.info("settlement_duplicate session=%s transaction=%s", session_id, existing.id)
    return SettlementResult(
        transaction=existing,
        duplicate=True,
        balance_after=await ledger.get_balance(buyer_id, db),
    )


async def settle_purchase(purchase: PurchaseEvent, db: AsyncSession) -> SettlementResult:
    """Credit the buyer and record the Transaction as one unit of work."""
    buyer = await db.get(User, purchase.buyer_id)
    if buyer is None:
        raise InvalidPurchaseEventError(
            "Buyer does not resolve to an existing user.",
            context={"session_id": purchase.session_id, "buyer_id": purchase.buyer_id},
        )

    replay = await _replay(purchase.session_id, purchase.buyer_id, db)
    if replay is not None:
        return replay

    transaction = Transaction(
        stripe_id=purchase.session_id,
        amount=purchase.amount,
        plan=purchase.plan,
        credits=purchase.credits,
        buyer_id=purchase.buyer_id,
    )
    try:
        balance_after = await ledger.apply_delta(
            purchase.buyer_id,
            db,
            delta=purchase.credits,
            idempotency_key=purchase.session_id,
            commit=False,
        )
        db.add(transaction)
        await db.commit()
        await db.refresh(transaction)
    except IntegrityError:
        # A concurrent delivery of the same session committed first; nothing of ours persisted.
        await db.rollback()
        replay = await _replay(purchase.session_id, purchase.buyer_id, db)
        if replay is None:
            raise
        return replay

    logger.info(
        "settlement_applied session=%s buyer=%s credits=%s balance_after=%s",
        purchase.session_id,
        purchase.buyer_id,
        purchase.credits,
        balance_after,
    )
    return SettlementResult(transaction=transaction, duplicate=False, balance_after=balance_after)


async def handle_payment_confirmed(
    payload: bytes,
    signature: Optional[str],
    db: AsyncSession,
) -> Optional[SettlementResult]:
    """Verify, parse and settle a webhook delivery; unrelated event types return None."""
    event = verify_webhook_event(payload, signature)
    event_type = str(event.get("type") or "")
    if event_type != CHECKOUT_COMPLETED:
        logger.info("stripe_webhook_ignored type=%s", event_type or "unknown")
        return None
    return await settle_purchase(parse_purchase_event(event), db)
