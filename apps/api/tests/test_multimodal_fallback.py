from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from multimodal.client import get_openai_client, translate_openai_error
from multimodal.inference import PLACEHOLDER_PNG, build_prompt, render_thumbnail
from multimodal.models import RecognitionResult
from multimodal.recognition import recognize_content
from services.errors import PermanentExternalError, TransientExternalError


@pytest.mark.asyncio
async def test_recognition_fallback_without_openai_key_returns_keywords():
    result = await recognize_content(
        "The BEST budget travel hacks nobody tells you",
        "Save money on flights and hotels",
        None,
        api_key="test-key",
    )

    assert "best" in result.keywords
    assert "travel" in result.keywords
    assert result.sentiment == "positive"
    assert result.main_themes == result.keywords[:3]
    assert result.style_guide["colorScheme"] == "vibrant"


@pytest.mark.asyncio
async def test_inference_fallback_without_openai_key_returns_placeholder_png():
    rendered = await render_thumbnail(
        "Budget Travel",
        RecognitionResult(keywords=["travel"]),
        {"mood": "calm"},
        api_key="",
    )

    assert rendered.data == PLACEHOLDER_PNG
    assert rendered.content_type == "image/png"


def test_prompt_prefers_template_style_over_recognition_guide():
    recognition = RecognitionResult(
        keywords=["mountain", "hiking"],
        sentiment="positive",
        main_themes=["outdoors"],
        celebrities=["Famous Climber"],
        style_guide={"mood": "dramatic", "composition": "dynamic"},
    )

    prompt = build_prompt("Summit Day", recognition, {"mood": "calm"})

    assert '"Summit Day"' in prompt
    assert "mood: calm" in prompt
    assert "mood: dramatic" not in prompt
    assert "composition: dynamic" in prompt
    assert "Famous Climber" in prompt


def test_placeholder_keys_do_not_build_a_client():
    assert get_openai_client("") is None
    assert get_openai_client("your_openai_api_key") is None
    assert get_openai_client("test-key") is None


def test_sdk_errors_map_to_transient_or_permanent():
    request = httpx.Request("POST", "https://api.openai.com/v1/images/generations")

    timeout = translate_openai_error(openai.APITimeoutError(request=request), "inference")
    throttled = translate_openai_error(
        openai.RateLimitError("slow down", response=httpx.Response(429, request=request), body=None),
        "inference",
    )
    rejected = translate_openai_error(
        openai.BadRequestError("bad prompt", response=httpx.Response(400, request=request), body=None),
        "inference",
    )

    assert isinstance(timeout, TransientExternalError)
    assert isinstance(throttled, TransientExternalError)
    assert isinstance(rejected, PermanentExternalError)


@pytest.mark.asyncio
async def test_malformed_recognition_output_is_permanent():
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = "not json"
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response)

    with patch("multimodal.recognition.get_openai_client", return_value=client):
        with pytest.raises(PermanentExternalError):
            await recognize_content("Title", "Description", None, api_key="sk-live")
