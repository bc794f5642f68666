"""Billing and credits router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import get_db
from models.transaction import Transaction
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.ledger import get_balance
from services.payments import create_checkout_session, list_plans
from services.settlement import handle_payment_confirmed, serialize_transaction
from services.transformations import list_transformation_types

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    plan: str = Field(min_length=1, max_length=50)


@router.get("/credits")
async def credits_summary(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(Transaction)
        .where(Transaction.buyer_id == user.id)
        .order_by(Transaction.created_at.desc())
        .limit(30)
    )
    return {
        "balance": await get_balance(user.id, db),
        "costs": {item["type"]: item["cost"] for item in list_transformation_types()},
        "recent_purchases": [serialize_transaction(row) for row in result.scalars().all()],
    }


@router.get("/plans")
async def credit_plans():
    return {"plans": list_plans()}


@router.post("/checkout")
async def checkout(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    user: User = Depends(get_current_user),
):
    """Create a hosted checkout session the client redirects to."""
    if not settings.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Stripe is not configured.")
    try:
        return await create_checkout_session(plan_id=request.plan, buyer_id=user.id)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@router.post("/webhook", include_in_schema=False)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    db: AsyncSession = Depends(get_db),
):
    """Payment confirmation endpoint; the raw body is verified before parsing."""
    payload = await request.body()
    result = await handle_payment_confirmed(payload, stripe_signature, db)
    if result is None:
        return {"received": True, "handled": False}
    return {
        "received": True,
        "handled": True,
        "duplicate": result.duplicate,
        "balance_after": result.balance_after,
        "transaction": serialize_transaction(result.transaction),
    }
