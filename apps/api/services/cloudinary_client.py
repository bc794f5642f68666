"""Cloudinary-backed transformation provider."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional
from urllib.parse import quote

from cloudinary.utils import api_sign_request
import httpx
from pydantic import BaseModel

from config import settings
from services.errors import UpstreamFailureError
from services.transformations import (
    ASPECT_RATIO_OPTIONS,
    FillConfig,
    RecolorConfig,
    RemoveBackgroundConfig,
    RemoveObjectConfig,
    RestoreConfig,
    TransformationResult,
)

logger = logging.getLogger(__name__)

CLOUDINARY_API_BASE = "https://api.cloudinary.com/v1_1"


def eager_transformation(config: BaseModel) -> str:
    """Render a typed config as a Cloudinary transformation string."""
    if isinstance(config, FillConfig):
        option = ASPECT_RATIO_OPTIONS[config.aspect_ratio]
        return f"ar_{config.aspect_ratio},b_gen_fill,c_pad,w_{option['width']}"
    if isinstance(config, RestoreConfig):
        return "e_gen_restore"
    if isinstance(config, RemoveBackgroundConfig):
        return "e_background_removal"
    if isinstance(config, RemoveObjectConfig):
        return f"e_gen_remove:prompt_{quote(config.prompt, safe='')}"
    if isinstance(config, RecolorConfig):
        return f"e_gen_recolor:prompt_{quote(config.prompt, safe='')};to-color_{config.to_color}"
    raise ValueError(f"Unsupported transformation config: {type(config).__name__}")


class CloudinaryTransformationProvider:
    """Runs eager transformations on already-uploaded assets."""

    def __init__(
        self,
        *,
        cloud_name: str,
        api_key: str,
        api_secret: str,
        timeout_seconds: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.cloud_name = cloud_name
        self.api_key = api_key
        self.api_secret = api_secret
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    @classmethod
    def from_settings(cls) -> "CloudinaryTransformationProvider":
        return cls(
            cloud_name=settings.CLOUDINARY_CLOUD_NAME,
            api_key=settings.CLOUDINARY_API_KEY,
            api_secret=settings.CLOUDINARY_API_SECRET,
            timeout_seconds=float(settings.CLOUDINARY_TIMEOUT_SECONDS),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    async def transform(self, *, public_id: str, config: BaseModel) -> TransformationResult:
        if not self.enabled:
            raise UpstreamFailureError("Cloudinary is not configured.", context={"provider": "cloudinary"})

        transformation = eager_transformation(config)
        params: Dict[str, Any] = {
            "public_id": public_id,
            "type": "upload",
            "eager": transformation,
            "timestamp": int(time.time()),
        }
        params["signature"] = api_sign_request(params, self.api_secret)
        params["api_key"] = self.api_key
        url = f"{CLOUDINARY_API_BASE}/{self.cloud_name}/image/explicit"

        try:
            async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
                response = await client.post(url, data=params)
                response.raise_for_status()
                body = response.json()
        except httpx.HTTPError as exc:
            logger.warning("cloudinary_transform_failed public_id=%s error=%s", public_id, exc)
            raise UpstreamFailureError(
                "Image transformation provider request failed.",
                context={"provider": "cloudinary"},
            ) from exc
        except ValueError as exc:
            raise UpstreamFailureError(
                "Image transformation provider returned an unreadable response.",
                context={"provider": "cloudinary"},
            ) from exc

        return self._parse_result(public_id, transformation, body)

    def _parse_result(self, public_id: str, transformation: str, body: Dict[str, Any]) -> TransformationResult:
        eager = body.get("eager") if isinstance(body, dict) else None
        if not eager or not isinstance(eager, list) or not isinstance(eager[0], dict):
            raise UpstreamFailureError(
                "Image transformation provider returned no derived asset.",
                context={"provider": "cloudinary"},
            )
        derived = eager[0]
        transformation_url = str(derived.get("secure_url") or "")
        if not transformation_url:
            raise UpstreamFailureError(
                "Image transformation provider returned no derived asset URL.",
                context={"provider": "cloudinary"},
            )
        return TransformationResult(
            derived_public_id=f"{body.get('public_id') or public_id}/{transformation}",
            width=derived.get("width") or body.get("width"),
            height=derived.get("height") or body.get("height"),
            secure_url=str(body.get("secure_url") or transformation_url),
            transformation_url=transformation_url,
        )


def get_transformation_provider() -> CloudinaryTransformationProvider:
    """FastAPI dependency returning the configured provider."""
    return CloudinaryTransformationProvider.from_settings()
