"""Routers package."""

from . import (
    health,
    users,
    images,
    transformations,
    billing,
)
