"""Image catalog router."""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from services.images import (
    DEFAULT_PAGE_SIZE,
    MAX_PAGE_SIZE,
    create_image_service,
    delete_image_service,
    get_image_service,
    list_images_service,
    serialize_image,
    update_image_service,
)
from services.transformations import TransformationConfig, image_fields_from_config

router = APIRouter()


class CreateImageRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    public_id: str = Field(min_length=1, max_length=500)
    secure_url: str = Field(min_length=8, max_length=2000)
    transformation_url: Optional[str] = Field(default=None, max_length=2000)
    width: Optional[int] = Field(default=None, ge=1)
    height: Optional[int] = Field(default=None, ge=1)
    config: TransformationConfig


class UpdateImageRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    transformation_url: Optional[str] = Field(default=None, max_length=2000)
    width: Optional[int] = Field(default=None, ge=1)
    height: Optional[int] = Field(default=None, ge=1)
    config: Optional[TransformationConfig] = None

    @field_validator("title")
    @classmethod
    def _title_not_null(cls, value: Optional[str]) -> str:
        if value is None:
            raise ValueError("title cannot be null")
        return value


def _image_changes(request: BaseModel) -> Dict[str, Any]:
    changes = request.model_dump(exclude_unset=True, exclude={"config"})
    config = getattr(request, "config", None)
    if config is not None:
        changes.update(image_fields_from_config(config))
    return changes


@router.post("")
async def create_image(
    request: CreateImageRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Save an already-transformed image to the author's collection."""
    image = await create_image_service(author_id=user.id, payload=_image_changes(request), db=db)
    return serialize_image(image)


@router.get("")
async def list_images(
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE),
    search_query: Optional[str] = Query(default=None, max_length=200),
    mine: bool = Query(default=False),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await list_images_service(
        db,
        search_query=search_query,
        author_id=user.id if mine else None,
        page=page,
        page_size=page_size,
    )


@router.get("/{image_id}")
async def get_image(
    image_id: str,
    _user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return serialize_image(await get_image_service(image_id, db))


@router.patch("/{image_id}")
async def update_image(
    image_id: str,
    request: UpdateImageRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    image = await update_image_service(
        image_id=image_id,
        actor_id=user.id,
        changes=_image_changes(request),
        db=db,
    )
    return serialize_image(image)


@router.delete("/{image_id}")
async def delete_image(
    image_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await delete_image_service(image_id=image_id, actor_id=user.id, db=db)
    return {"deleted": True, "image_id": image_id}
