"""Thumbnail generation router."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import rate_limit
from routers.schemas import GenerateThumbnailRequest, ThumbnailListResponse, ThumbnailResponse
from services.generation import GenerationRequest, fail_generation, spawn_generation, submit_generation
from services.generation_queue import enqueue_generation_job
from services.storage import get_artifact_storage
from services.thumbnails import (
    TERMINAL_STATUSES,
    delete_thumbnail,
    get_owned_thumbnail,
    list_by_user,
    serialize_thumbnail,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def _to_response(thumbnail) -> ThumbnailResponse:
    return ThumbnailResponse(**serialize_thumbnail(thumbnail, get_artifact_storage()))


async def _dispatch(thumbnail_id: str) -> None:
    if not settings.GENERATION_QUEUE_ENABLED:
        spawn_generation(thumbnail_id)
        return
    try:
        enqueue_generation_job(thumbnail_id)
    except Exception as exc:
        logger.exception("Failed to enqueue generation %s: %s", thumbnail_id, exc)
        await fail_generation(
            thumbnail_id,
            "queue_unavailable",
            "Generation queue is unavailable. Credits were refunded; try again shortly.",
        )
        raise HTTPException(
            status_code=503,
            detail="Generation queue is unavailable. Credits were refunded; try again shortly.",
        ) from exc


@router.post("/generate", response_model=ThumbnailResponse, status_code=202)
async def generate(
    request: GenerateThumbnailRequest,
    idempotency_key_header: Optional[str] = Header(default=None, alias="Idempotency-Key"),
    _rate_limit: None = Depends(rate_limit("thumbnail_generate", limit=120, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
):
    idempotency_key = (request.idempotency_key or idempotency_key_header or "").strip()
    if not idempotency_key:
        raise HTTPException(status_code=422, detail="idempotencyKey or an Idempotency-Key header is required.")

    thumbnail = await submit_generation(
        auth.user_id,
        GenerationRequest(
            video_title=request.video_title,
            description=request.description,
            template_id=request.template_id,
            idempotency_key=idempotency_key,
            source_image_url=request.source_image_url,
        ),
        email=auth.email,
    )
    if thumbnail.status not in TERMINAL_STATUSES:
        await _dispatch(thumbnail.id)
    return _to_response(thumbnail)


@router.get("", response_model=ThumbnailListResponse)
async def list_thumbnails(
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    thumbnails = await list_by_user(db, auth.user_id, limit=limit)
    items = [_to_response(thumbnail) for thumbnail in thumbnails]
    return ThumbnailListResponse(thumbnails=items, count=len(items))


@router.get("/{thumbnail_id}", response_model=ThumbnailResponse)
async def get_thumbnail_status(
    thumbnail_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    return _to_response(await get_owned_thumbnail(db, thumbnail_id, auth.user_id))


@router.delete("/{thumbnail_id}", status_code=204)
async def remove_thumbnail(
    thumbnail_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await delete_thumbnail(db, thumbnail_id, auth.user_id)
    return Response(status_code=204)
