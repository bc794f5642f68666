"""Typed transformation configs and the gated transformation flow."""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from services import gate, images
from services.errors import InsufficientCreditsError

logger = logging.getLogger(__name__)

AspectRatioKey = Literal["1:1", "3:4", "9:16"]

ASPECT_RATIO_OPTIONS: Dict[str, Dict[str, Any]] = {
    "1:1": {"label": "Square (1:1)", "width": 1000, "height": 1000},
    "3:4": {"label": "Standard Portrait (3:4)", "width": 1000, "height": 1334},
    "9:16": {"label": "Phone Portrait (9:16)", "width": 1000, "height": 1778},
}

TRANSFORMATION_TYPES: Dict[str, Dict[str, str]] = {
    "restore": {
        "title": "Restore Image",
        "subtitle": "Refine images by removing noise and imperfections",
    },
    "removeBackground": {
        "title": "Background Remove",
        "subtitle": "Removes the background of the image using AI",
    },
    "fill": {
        "title": "Generative Fill",
        "subtitle": "Enhance an image's dimensions using AI outpainting",
    },
    "remove": {
        "title": "Object Remove",
        "subtitle": "Identify and eliminate objects from images",
    },
    "recolor": {
        "title": "Object Recolor",
        "subtitle": "Identify and recolor objects from the image",
    },
}


class FillConfig(BaseModel):
    type: Literal["fill"] = "fill"
    aspect_ratio: AspectRatioKey = "1:1"


class RestoreConfig(BaseModel):
    type: Literal["restore"] = "restore"


class RemoveBackgroundConfig(BaseModel):
    type: Literal["removeBackground"] = "removeBackground"


class RemoveObjectConfig(BaseModel):
    type: Literal["remove"] = "remove"
    prompt: str = Field(min_length=1, max_length=200)


class RecolorConfig(BaseModel):
    type: Literal["recolor"] = "recolor"
    prompt: str = Field(min_length=1, max_length=200)
    to_color: str = Field(min_length=1, max_length=32)

    @field_validator("to_color")
    @classmethod
    def _strip_hash(cls, value: str) -> str:
        return value.strip().lstrip("#")


TransformationConfig = Annotated[
    Union[FillConfig, RestoreConfig, RemoveBackgroundConfig, RemoveObjectConfig, RecolorConfig],
    Field(discriminator="type"),
]


class TransformationResult(BaseModel):
    derived_public_id: str
    width: Optional[int] = None
    height: Optional[int] = None
    secure_url: str
    transformation_url: str


def transformation_cost(kind: str) -> int:
    """Credits charged for one transformation of ``kind``."""
    return max(int(settings.TRANSFORMATION_CREDIT_COST), 0)


def list_transformation_types() -> List[Dict[str, Any]]:
    return [
        {
            "type": key,
            "title": meta["title"],
            "subtitle": meta["subtitle"],
            "cost": transformation_cost(key),
        }
        for key, meta in TRANSFORMATION_TYPES.items()
    ]


def image_fields_from_config(config: BaseModel) -> Dict[str, Any]:
    """Flatten a typed config into the denormalized image columns."""
    fields: Dict[str, Any] = {
        "transformation_type": config.type,
        "config": config.model_dump(),
        "aspect_ratio": None,
        "color": None,
        "prompt": None,
    }
    if isinstance(config, FillConfig):
        fields["aspect_ratio"] = config.aspect_ratio
    if isinstance(config, (RemoveObjectConfig, RecolorConfig)):
        fields["prompt"] = config.prompt
    if isinstance(config, RecolorConfig):
        fields["color"] = config.to_color
    return fields


async def _refund_unfinished(decision: gate.GateDecision, db: AsyncSession) -> None:
    # Drop any half-written image before the compensating credit is committed.
    await db.rollback()
    await gate.compensate(decision, db)


async def apply_transformation_service(
    *,
    user_id: str,
    title: str,
    public_id: str,
    config: BaseModel,
    provider: Any,
    db: AsyncSession,
    save: bool = True,
) -> Dict[str, Any]:
    """
    Charge credits, run the provider transformation and optionally save it.

    If the provider call or the image save fails (or the request is
    cancelled) after a successful charge, the charge is refunded before the
    error propagates.
    """
    kind = config.type
    decision = await gate.request_transformation(
        user_id,
        db,
        kind=kind,
        cost=transformation_cost(kind),
    )
    if not decision.approved:
        raise InsufficientCreditsError(
            f"Insufficient credits. Required: {decision.cost}, available: {decision.balance}. "
            "Purchase more credits to continue.",
            context={"required": decision.cost, "available": decision.balance},
        )

    image = None
    try:
        result: TransformationResult = await provider.transform(public_id=public_id, config=config)
        if save:
            image = await images.create_image_service(
                author_id=user_id,
                payload={
                    "title": title,
                    "public_id": public_id,
                    "secure_url": result.secure_url,
                    "transformation_url": result.transformation_url,
                    "derived_public_id": result.derived_public_id,
                    "width": result.width,
                    "height": result.height,
                    **image_fields_from_config(config),
                },
                db=db,
            )
    except (Exception, asyncio.CancelledError):
        await asyncio.shield(_refund_unfinished(decision, db))
        raise

    logger.info(
        "transformation_applied user=%s kind=%s public_id=%s saved=%s",
        user_id,
        kind,
        public_id,
        image is not None,
    )
    return {
        "transformation": result.model_dump(),
        "credits": {"charged": decision.cost, "balance_after": decision.balance},
        "image": images.serialize_image(image) if image is not None else None,
    }
