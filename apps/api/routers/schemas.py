"""Wire models. JSON on the wire is camelCase; Python attributes stay snake_case."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GenerateThumbnailRequest(CamelModel):
    video_title: str = Field(min_length=1, max_length=200)
    description: str = Field(default="", max_length=5000)
    template_id: str = Field(min_length=1, max_length=64)
    idempotency_key: Optional[str] = Field(default=None, max_length=128)
    source_image_url: Optional[str] = Field(default=None, max_length=4000)


class ThumbnailResponse(CamelModel):
    id: str
    user_id: str
    video_title: str
    description: str = ""
    style: str
    status: str
    stage: str
    url: Optional[str] = None
    storage_key: Optional[str] = None
    credit_cost: int = 0
    idempotency_key: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


class ThumbnailListResponse(CamelModel):
    thumbnails: List[ThumbnailResponse]
    count: int


class CreateTemplateRequest(CamelModel):
    name: str = Field(min_length=1, max_length=120)
    style_params: Dict[str, Any] = Field(default_factory=dict)
    parent_template_id: Optional[str] = None


class TemplateResponse(CamelModel):
    id: str
    name: str
    style_params: Dict[str, Any] = Field(default_factory=dict)
    credit_cost: int
    revision: int
    parent_template_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    created_at: Optional[str] = None


class SubscriptionRequest(CamelModel):
    plan: str = Field(min_length=1, max_length=32)


class SubscriptionResponse(CamelModel):
    id: str
    user_id: str
    plan: str
    periodic_credit_grant: int
    credit_ceiling: int
    period_index: int
    renewal_at: Optional[str] = None
    status: str
    balance: int
    grants_applied: int = 0


class CreditTransactionResponse(CamelModel):
    id: str
    reason: str
    delta_credits: int
    balance_after: int
    reservation_id: Optional[str] = None
    created_at: Optional[str] = None


class CreditSummaryResponse(CamelModel):
    balance: int
    plan: str
    reserved: int
    recent_transactions: List[CreditTransactionResponse]
