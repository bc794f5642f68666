"""
Current-user profile, profile sync and account deletion.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from services.ledger import get_balance
from services.users import delete_user_service, serialize_user, update_profile_service

router = APIRouter()


class UserResponse(BaseModel):
    id: str
    external_id: str
    email: str
    username: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    photo: Optional[str] = None
    credit_balance: int
    created_at: Optional[str] = None


class UpdateProfileRequest(BaseModel):
    email: Optional[str] = Field(default=None, max_length=320)
    username: Optional[str] = Field(default=None, max_length=100)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)
    photo: Optional[str] = Field(default=None, max_length=2000)


@router.get("/me", response_model=UserResponse)
async def get_me(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Profile and live credit balance of the signed-in user."""
    return serialize_user(user, balance=await get_balance(user.id, db))


@router.patch("/me", response_model=UserResponse)
async def update_me(
    request: UpdateProfileRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    updated = await update_profile_service(
        user.external_id,
        db,
        changes=request.model_dump(exclude_unset=True),
    )
    return serialize_user(updated, balance=await get_balance(updated.id, db))


@router.delete("/me")
async def delete_me(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await delete_user_service(user.external_id, db)
