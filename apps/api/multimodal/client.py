import logging
from typing import Optional

import openai
from openai import AsyncOpenAI

from services.errors import PermanentExternalError, TransientExternalError

logger = logging.getLogger(__name__)


def get_openai_client(api_key: str, timeout: Optional[float] = None) -> Optional[AsyncOpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    # Retries are driven by the generation pipeline, not the SDK.
    return AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)


def translate_openai_error(exc: Exception, service: str) -> Exception:
    """Map SDK failures onto transient (retryable) or permanent errors."""
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError, openai.RateLimitError)):
        return TransientExternalError(f"{service} unavailable: {exc}")
    if isinstance(exc, openai.InternalServerError):
        return TransientExternalError(f"{service} upstream error: {exc}")
    if isinstance(exc, openai.APIStatusError):
        return PermanentExternalError(f"{service} rejected the request ({exc.status_code}): {exc}")
    return PermanentExternalError(f"{service} failed: {exc}")
