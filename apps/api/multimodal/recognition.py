import json
import logging
import re
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from services.errors import PermanentExternalError
from .client import get_openai_client, translate_openai_error
from .models import RecognitionResult

logger = logging.getLogger(__name__)

STOPWORDS = {
    "the", "and", "for", "with", "this", "that", "you", "your", "how", "what",
    "why", "are", "was", "from", "into", "about", "will", "can", "our", "its",
}

POSITIVE_HINTS = {"best", "amazing", "win", "easy", "love", "top", "ultimate", "new", "free"}
NEGATIVE_HINTS = {"worst", "fail", "mistake", "never", "stop", "avoid", "wrong", "dead"}


def _local_recognition(video_title: str, description: str) -> RecognitionResult:
    """Keyword-based fallback used when no recognition backend is configured."""
    words = re.findall(r"[a-zA-Z][a-zA-Z0-9'-]{2,}", f"{video_title} {description}".lower())
    keywords: List[str] = []
    for word in words:
        if word in STOPWORDS or word in keywords:
            continue
        keywords.append(word)
        if len(keywords) >= 8:
            break

    positive = sum(1 for w in words if w in POSITIVE_HINTS)
    negative = sum(1 for w in words if w in NEGATIVE_HINTS)
    sentiment = "positive" if positive > negative else "negative" if negative > positive else "neutral"
    return RecognitionResult(
        keywords=keywords,
        sentiment=sentiment,
        main_themes=keywords[:3],
        celebrities=[],
        style_guide={
            "colorScheme": "vibrant" if sentiment == "positive" else "high_contrast",
            "composition": "dynamic",
            "mood": "energetic" if sentiment != "negative" else "dramatic",
        },
    )


async def recognize_content(
    video_title: str,
    description: str,
    source_image_url: Optional[str],
    *,
    api_key: str,
    model: str = "gpt-4o",
) -> RecognitionResult:
    """
    Extract keywords, tone, themes and recognisable people for a video.

    Args:
        video_title: Title of the video the thumbnail is for
        description: Video description
        source_image_url: Optional frame/photo to run face recognition on
        api_key: OpenAI API key
        model: Vision-capable chat model
    """
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("Using local recognition fallback.")
        return _local_recognition(video_title, description)

    system_prompt = """
    You are a YouTube thumbnail art director.
    Analyze the video title, description and optional source image.

    Return a strict JSON object matching this schema:
    {
      "keywords": ["string"],
      "sentiment": "positive|negative|neutral",
      "main_themes": ["string"],
      "celebrities": ["string"],
      "style_guide": {"colorScheme": "string", "composition": "string", "mood": "string"}
    }
    Only list celebrities you can identify with high confidence in the image.
    """

    user_message: List[Dict[str, Any]] = [
        {
            "type": "text",
            "text": f"Title: {video_title}\n\nDescription:\n{(description or '')[:4000]}",
        }
    ]
    if source_image_url:
        user_message.append({"type": "image_url", "image_url": {"url": source_image_url}})

    try:
        response = await client.chat.completions.create(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_message},
            ],
            response_format={"type": "json_object"},
            max_tokens=800,
        )
    except Exception as exc:
        raise translate_openai_error(exc, "recognition") from exc

    content = response.choices[0].message.content if response.choices else None
    try:
        data = json.loads(content or "")
        return RecognitionResult(**data)
    except (json.JSONDecodeError, TypeError, PydanticValidationError) as exc:
        raise PermanentExternalError(f"recognition returned malformed output: {exc}") from exc
