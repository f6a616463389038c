"""Template registry router."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from routers.schemas import CreateTemplateRequest, TemplateResponse
from services.templates import create_template, list_templates, serialize_template
from services.users import ensure_user

router = APIRouter()


@router.get("", response_model=List[TemplateResponse])
async def get_templates(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    templates = await list_templates(db, auth.user_id)
    return [TemplateResponse(**serialize_template(template)) for template in templates]


@router.post("", response_model=TemplateResponse, status_code=201)
async def publish_template(
    request: CreateTemplateRequest,
    _rate_limit: None = Depends(rate_limit("template_create", limit=60, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth.user_id, auth.email)
    template = await create_template(
        db,
        name=request.name,
        style_params=request.style_params,
        owner_user_id=auth.user_id,
        parent_template_id=request.parent_template_id,
    )
    return TemplateResponse(**serialize_template(template))
