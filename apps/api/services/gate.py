"""Check-then-charge guard in front of paid transformations."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from services import ledger
from services.errors import InsufficientCreditsError

logger = logging.getLogger(__name__)

DENIED_INSUFFICIENT_CREDITS = "insufficient_credits"


@dataclass(frozen=True)
class GateDecision:
    status: Literal["approved", "denied"]
    user_id: str
    kind: str
    cost: int
    balance: int
    reason: Optional[str] = None

    @property
    def approved(self) -> bool:
        return self.status == "approved"


def _denied(user_id: str, kind: str, cost: int, balance: int) -> GateDecision:
    return GateDecision(
        status="denied",
        user_id=user_id,
        kind=kind,
        cost=cost,
        balance=balance,
        reason=DENIED_INSUFFICIENT_CREDITS,
    )


async def request_transformation(
    user_id: str,
    db: AsyncSession,
    *,
    kind: str,
    cost: int,
) -> GateDecision:
    """Charge ``cost`` credits up front or deny without side effects."""
    charge = max(int(cost), 0)
    balance = await ledger.get_balance(user_id, db)
    if balance < charge:
        logger.info("gate_denied user=%s kind=%s cost=%s balance=%s", user_id, kind, charge, balance)
        return _denied(user_id, kind, charge, balance)

    try:
        balance_after = await ledger.apply_delta(user_id, db, delta=-charge)
    except InsufficientCreditsError as exc:
        # A concurrent spend drained the balance between check and charge.
        available = int(exc.context.get("available", 0))
        logger.info("gate_denied_on_charge user=%s kind=%s cost=%s balance=%s", user_id, kind, charge, available)
        return _denied(user_id, kind, charge, available)

    logger.info("gate_approved user=%s kind=%s cost=%s balance_after=%s", user_id, kind, charge, balance_after)
    return GateDecision(
        status="approved",
        user_id=user_id,
        kind=kind,
        cost=charge,
        balance=balance_after,
    )


async def compensate(decision: GateDecision, db: AsyncSession) -> int:
    """Refund an approved charge after the paid work failed or was cancelled."""
    if not decision.approved or decision.cost <= 0:
        return await ledger.get_balance(decision.user_id, db)
    balance = await ledger.refund(decision.user_id, db, amount=decision.cost)
    logger.warning(
        "gate_compensated user=%s kind=%s cost=%s balance_after=%s",
        decision.user_id,
        decision.kind,
        decision.cost,
        balance,
    )
    return balance
