"""Ownership-scoped image catalog."""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import func, or_
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.image import Image
from models.user import User
from services.errors import NotFoundError, UnauthorizedError

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 9
MAX_PAGE_SIZE = 100

EDITABLE_FIELDS = (
    "title",
    "transformation_type",
    "public_id",
    "secure_url",
    "transformation_url",
    "derived_public_id",
    "width",
    "height",
    "config",
    "aspect_ratio",
    "color",
    "prompt",
)


def serialize_image(image: Image) -> Dict[str, Any]:
    author = image.author
    return {
        "id": image.id,
        "title": image.title,
        "transformation_type": image.transformation_type,
        "public_id": image.public_id,
        "secure_url": image.secure_url,
        "transformation_url": image.transformation_url,
        "derived_public_id": image.derived_public_id,
        "width": image.width,
        "height": image.height,
        "config": image.config,
        "aspect_ratio": image.aspect_ratio,
        "color": image.color,
        "prompt": image.prompt,
        "author": {
            "id": author.id,
            "external_id": author.external_id,
            "first_name": author.first_name,
            "last_name": author.last_name,
        } if author else None,
        "created_at": image.created_at.isoformat() if image.created_at else None,
        "updated_at": image.updated_at.isoformat() if image.updated_at else None,
    }


async def _load_image(image_id: str, db: AsyncSession) -> Image:
    result = await db.execute(
        select(Image)
        .where(Image.id == image_id)
        .execution_options(populate_existing=True)
    )
    image = result.unique().scalar_one_or_none()
    if image is None:
        raise NotFoundError("Image not found.", context={"image_id": image_id})
    return image


async def create_image_service(*, author_id: str, payload: Dict[str, Any], db: AsyncSession) -> Image:
    author = await db.get(User, author_id)
    if author is None:
        raise NotFoundError("User not found.", context={"user_id": author_id})

    image = Image(
        id=str(uuid.uuid4()),
        author_id=author.id,
        **{key: payload.get(key) for key in EDITABLE_FIELDS if key in payload},
    )
    db.add(image)
    await db.commit()
    logger.info("image_created user=%s image=%s type=%s", author_id, image.id, image.transformation_type)
    return await _load_image(image.id, db)


async def get_image_service(image_id: str, db: AsyncSession) -> Image:
    return await _load_image(image_id, db)


async def _load_owned_image(image_id: str, actor_id: str, db: AsyncSession) -> Image:
    image = await _load_image(image_id, db)
    if image.author_id != actor_id:
        logger.warning("image_access_denied user=%s image=%s", actor_id, image_id)
        raise UnauthorizedError(
            "Only the author can modify this image.",
            context={"image_id": image_id},
        )
    return image


async def update_image_service(
    *,
    image_id: str,
    actor_id: str,
    changes: Dict[str, Any],
    db: AsyncSession,
) -> Image:
    image = await _load_owned_image(image_id, actor_id, db)
    for key in EDITABLE_FIELDS:
        if key in changes:
            setattr(image, key, changes[key])
    await db.commit()
    logger.info("image_updated user=%s image=%s fields=%s", actor_id, image_id, sorted(changes))
    return await _load_image(image_id, db)


async def delete_image_service(*, image_id: str, actor_id: str, db: AsyncSession) -> None:
    image = await _load_owned_image(image_id, actor_id, db)
    await db.delete(image)
    await db.commit()
    logger.info("image_deleted user=%s image=%s", actor_id, image_id)


async def list_images_service(
    db: AsyncSession,
    *,
    search_query: Optional[str] = None,
    author_id: Optional[str] = None,
    page: int = 1,
    page_size: int = DEFAULT_PAGE_SIZE,
) -> Dict[str, Any]:
    """Page through images, most recently updated first."""
    page = max(int(page or 1), 1)
    page_size = max(1, min(int(page_size or DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE))

    filters = []
    if author_id:
        filters.append(Image.author_id == author_id)
    query = (search_query or "").strip()
    if query:
        pattern = f"%{query}%"
        filters.append(or_(Image.title.ilike(pattern), Image.prompt.ilike(pattern)))

    total_result = await db.execute(select(func.count(Image.id)).where(*filters))
    total_matching = int(total_result.scalar() or 0)

    rows_result = await db.execute(
        select(Image)
        .where(*filters)
        .order_by(Image.updated_at.desc(), Image.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    rows = rows_result.unique().scalars().all()

    saved_result = await db.execute(select(func.count(Image.id)))
    return {
        "page": page,
        "page_size": page_size,
        "total_count": total_matching,
        "total_page": math.ceil(total_matching / page_size),
        "saved_images": int(saved_result.scalar() or 0),
        "items": [serialize_image(image) for image in rows],
    }
