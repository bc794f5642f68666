"""Identity-provider user sync and account lifecycle."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.image import Image
from models.transaction import Transaction
from models.user import User
from services.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("email", "username", "first_name", "last_name", "photo")


def serialize_user(user: User, balance: Optional[int] = None) -> Dict[str, Any]:
    return {
        "id": user.id,
        "external_id": user.external_id,
        "email": user.email,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "photo": user.photo,
        "credit_balance": int(user.credit_balance if balance is None else balance),
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


async def _fetch_by_external_id(external_id: str, db: AsyncSession) -> Optional[User]:
    result = await db.execute(
        select(User)
        .where(User.external_id == external_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_user_by_external_id(external_id: str, db: AsyncSession) -> User:
    user = await _fetch_by_external_id(external_id, db)
    if user is None:
        raise NotFoundError("User not found.", context={"external_id": external_id})
    return user


async def get_or_create_user(
    external_id: str,
    db: AsyncSession,
    *,
    profile: Optional[Dict[str, Any]] = None,
) -> User:
    """Map an identity-provider id onto a User, creating it on first sight."""
    user = await _fetch_by_external_id(external_id, db)
    if user is not None:
        return user

    fields = {key: value for key, value in (profile or {}).items() if key in PROFILE_FIELDS and value}
    fields.setdefault("email", f"{external_id}@local.invalid")
    user = User(
        id=str(uuid.uuid4()),
        external_id=external_id,
        credit_balance=max(int(settings.NEW_USER_CREDITS), 0),
        **fields,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        # Another request created the same identity first.
        await db.rollback()
        return await get_user_by_external_id(external_id, db)

    logger.info("user_created user=%s external_id=%s", user.id, external_id)
    return await get_user_by_external_id(external_id, db)


async def update_profile_service(
    external_id: str,
    db: AsyncSession,
    *,
    changes: Dict[str, Any],
) -> User:
    """Apply identity-provider profile fields; the balance is never touched here."""
    user = await get_user_by_external_id(external_id, db)
    for key in PROFILE_FIELDS:
        if key in changes and changes[key] is not None:
            setattr(user, key, changes[key])
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError(
            "Email is already used by another account.",
            context={"field": "email"},
        ) from exc
    logger.info("user_profile_synced user=%s fields=%s", user.id, sorted(k for k in changes if k in PROFILE_FIELDS))
    return await get_user_by_external_id(external_id, db)


async def delete_user_service(external_id: str, db: AsyncSession) -> Dict[str, Any]:
    """
    Remove an account together with its images.

    Transactions are retained as the purchase history; their buyer
    reference is cleared so no row points at the deleted user.
    """
    user = await get_user_by_external_id(external_id, db)
    user_id = user.id

    images_result = await db.execute(delete(Image).where(Image.author_id == user_id))
    await db.execute(
        Transaction.__table__.update()
        .where(Transaction.buyer_id == user_id)
        .values(buyer_id=None)
    )
    await db.delete(user)
    await db.commit()

    deleted_images = int(images_result.rowcount or 0)
    logger.info("user_deleted user=%s external_id=%s images=%s", user_id, external_id, deleted_images)
    return {"deleted": True, "user_id": user_id, "deleted_images": deleted_images}
