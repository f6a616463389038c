import base64
import binascii
import logging
from typing import Any, Dict

from services.errors import PermanentExternalError
from .client import get_openai_client, translate_openai_error
from .models import RecognitionResult, RenderedImage

logger = logging.getLogger(__name__)

# 1x1 transparent PNG returned when no inference backend is configured.
PLACEHOLDER_PNG = bytes([
    0x89, 0x50, 0x4E, 0x47, 0x0D, 0x0A, 0x1A, 0x0A, 0x00, 0x00, 0x00, 0x0D,
    0x49, 0x48, 0x44, 0x52, 0x00, 0x00, 0x00, 0x01, 0x00, 0x00, 0x00, 0x01,
    0x08, 0x06, 0x00, 0x00, 0x00, 0x1F, 0x15, 0xC4, 0x89, 0x00, 0x00, 0x00,
    0x0A, 0x49, 0x44, 0x41, 0x54, 0x78, 0x9C, 0x63, 0x00, 0x01, 0x00, 0x00,
    0x05, 0x00, 0x01, 0x0D, 0x0A, 0x2D, 0xB4, 0x00, 0x00, 0x00, 0x00, 0x49,
    0x45, 0x4E, 0x44, 0xAE, 0x42, 0x60, 0x82,
])


def build_prompt(video_title: str, recognition: RecognitionResult, style_params: Dict[str, Any]) -> str:
    style = {**recognition.style_guide, **{str(k): v for k, v in (style_params or {}).items()}}
    style_text = ", ".join(f"{key}: {value}" for key, value in sorted(style.items()))
    parts = [
        f'A 16:9 YouTube thumbnail for a video titled "{video_title}".',
        f"Mood is {recognition.sentiment}.",
    ]
    if recognition.main_themes:
        parts.append(f"Themes: {', '.join(recognition.main_themes)}.")
    if recognition.keywords:
        parts.append(f"Visual keywords: {', '.join(recognition.keywords[:8])}.")
    if recognition.celebrities:
        parts.append(f"Feature a recognisable likeness of: {', '.join(recognition.celebrities)}.")
    if style_text:
        parts.append(f"Style: {style_text}.")
    parts.append("Bold focal subject, high contrast, readable at small sizes.")
    return " ".join(parts)


async def render_thumbnail(
    video_title: str,
    recognition: RecognitionResult,
    style_params: Dict[str, Any],
    *,
    api_key: str,
    model: str = "gpt-image-1",
    size: str = "1536x1024",
) -> RenderedImage:
    """Render a thumbnail image from recognition output and template style."""
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using placeholder thumbnail render.")
        return RenderedImage(data=PLACEHOLDER_PNG, content_type="image/png")

    prompt = build_prompt(video_title, recognition, style_params)
    try:
        response = await client.images.generate(model=model, prompt=prompt, size=size, n=1)
    except Exception as exc:
        raise translate_openai_error(exc, "inference") from exc

    encoded = response.data[0].b64_json if response.data else None
    if not encoded:
        raise PermanentExternalError("inference returned no image data")
    try:
        data = base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PermanentExternalError(f"inference returned undecodable image: {exc}") from exc
    return RenderedImage(data=data, content_type="image/png")
