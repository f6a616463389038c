from typing import Dict, List
from pydantic import BaseModel, Field


class RecognitionResult(BaseModel):
    keywords: List[str] = Field(default_factory=list)
    sentiment: str = "neutral"   # "positive", "negative", "neutral"
    main_themes: List[str] = Field(default_factory=list)
    celebrities: List[str] = Field(default_factory=list)
    style_guide: Dict[str, str] = Field(default_factory=dict)


class RenderedImage(BaseModel):
    data: bytes
    content_type: str = "image/png"
