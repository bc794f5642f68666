"""Credit-gated image transformation router."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_user
from routers.rate_limit import rate_limit
from services.cloudinary_client import CloudinaryTransformationProvider, get_transformation_provider
from services.transformations import (
    ASPECT_RATIO_OPTIONS,
    TransformationConfig,
    apply_transformation_service,
    list_transformation_types,
)

router = APIRouter()
logger = logging.getLogger(__name__)


class ApplyTransformationRequest(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    public_id: str = Field(min_length=1, max_length=500)
    config: TransformationConfig
    save: bool = True


@router.get("/types")
async def transformation_types():
    """Available transformation kinds with their credit cost."""
    return {
        "types": list_transformation_types(),
        "aspect_ratios": [{"key": key, **option} for key, option in ASPECT_RATIO_OPTIONS.items()],
    }


@router.post("")
async def apply_transformation(
    request: ApplyTransformationRequest,
    _rate_limit: None = Depends(rate_limit("transformation_apply", limit=120, window_seconds=3600)),
    user: User = Depends(get_current_user),
    provider: CloudinaryTransformationProvider = Depends(get_transformation_provider),
    db: AsyncSession = Depends(get_db),
):
    """Charge credits and run the requested transformation."""
    return await apply_transformation_service(
        user_id=user.id,
        title=request.title,
        public_id=request.public_id,
        config=request.config,
        provider=provider,
        db=db,
        save=request.save,
    )
