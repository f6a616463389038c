"""Routers package."""

from . import (
    health,
    thumbnails,
    templates,
    subscriptions,
    credits,
    media,
)
