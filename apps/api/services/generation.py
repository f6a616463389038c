"""Thumbnail generation orchestrator.

A request is accepted once its credits are reserved and a pending record
exists. The run then walks recognizing -> rendering -> storing -> completed,
checkpointing each stage on the record so a replay resumes instead of
repeating paid work. Every failure after the reservation refunds it before
the record is marked failed.
"""

from __future__ import annotations

import asyncio
import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional, Set, TypeVar

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError

from config import settings
from database import async_session_maker
from models.thumbnail import Thumbnail
from multimodal.inference import render_thumbnail
from multimodal.models import RecognitionResult
from multimodal.recognition import recognize_content
from services.credits import RESERVED, commit_reservation, refund_reservation, reserve_credits
from services.errors import (
    DuplicateRequestError,
    NotFoundError,
    ReservationStateError,
    ThumbnailServiceError,
    TransientExternalError,
    ValidationError,
)
from services.storage import get_artifact_storage
from services.templates import get_template
from services.thumbnails import (
    TERMINAL_STATUSES,
    get_by_idempotency_key,
    get_thumbnail,
    update_thumbnail,
)
from services.users import ensure_user

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIVE_STATUSES = ("pending", "processing")
MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
IDEMPOTENCY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9._:\-]{1,128}$")

# Strong references so fire-and-forget runs are not garbage collected mid-flight.
_inflight: Set["asyncio.Task[Thumbnail]"] = set()


@dataclass
class GenerationRequest:
    video_title: str
    description: str
    template_id: str
    idempotency_key: str
    source_image_url: Optional[str] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_request(request: GenerationRequest) -> GenerationRequest:
    title = str(request.video_title or "").strip()
    if not title:
        raise ValidationError("videoTitle is required")
    if len(title) > MAX_TITLE_LENGTH:
        raise ValidationError(f"videoTitle must be at most {MAX_TITLE_LENGTH} characters")
    description = str(request.description or "").strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"description must be at most {MAX_DESCRIPTION_LENGTH} characters")
    template_id = str(request.template_id or "").strip()
    if not template_id:
        raise ValidationError("templateId is required")
    key = str(request.idempotency_key or "").strip()
    if not IDEMPOTENCY_KEY_PATTERN.match(key):
        raise ValidationError("idempotencyKey must be 1-128 characters of letters, digits, '.', '_', ':' or '-'")
    source = (request.source_image_url or "").strip() or None
    if source and not source.startswith(("https://", "http://", "data:image/")):
        raise ValidationError("sourceImageUrl must be an http(s) URL or an image data URI")
    return GenerationRequest(
        video_title=title,
        description=description,
        template_id=template_id,
        idempotency_key=key,
        source_image_url=source,
    )


async def call_with_retries(stage: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> T:
    """Run an external call with a per-attempt timeout and exponential backoff.

    Only transient failures are retried; anything else propagates at once.
    """
    attempts = max(int(settings.EXTERNAL_MAX_ATTEMPTS), 1)
    timeout = float(settings.EXTERNAL_CALL_TIMEOUT_SECONDS)
    base_delay = max(float(settings.EXTERNAL_BACKOFF_BASE_SECONDS), 0.0)

    last_message = "no attempt made"
    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.wait_for(func(*args, **kwargs), timeout=timeout)
        except asyncio.TimeoutError:
            last_message = f"{stage} timed out after {timeout:g}s"
        except TransientExternalError as exc:
            last_message = exc.message
        if attempt < attempts:
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "%s attempt %s/%s failed (%s); retrying in %.2fs",
                stage,
                attempt,
                attempts,
                last_message,
                delay,
            )
            await asyncio.sleep(delay)

    raise TransientExternalError(f"{stage} failed after {attempts} attempts: {last_message}")


async def submit_generation(
    user_id: str,
    request: GenerationRequest,
    *,
    email: Optional[str] = None,
) -> Thumbnail:
    """Accept a request: reserve its credits and persist a pending record.

    A repeated idempotency key returns the record created by the first call.
    """
    req = validate_request(request)
    async with async_session_maker() as db:
        await ensure_user(db, user_id, email)

        existing = await get_by_idempotency_key(db, user_id, req.idempotency_key)
        if existing is not None:
            logger.info("Replay of generation %s for key %s", existing.id, req.idempotency_key)
            return existing

        try:
            template = await get_template(db, req.template_id, user_id)
        except NotFoundError as exc:
            raise ValidationError(f"Unknown template '{req.template_id}'") from exc
        cost = int(template.credit_cost or 0)
        template_id = template.id

        thumbnail_id = str(uuid.uuid4())
        reservation = await reserve_credits(
            user_id,
            db,
            amount=cost,
            idempotency_key=req.idempotency_key,
            reference_type="thumbnail",
            reference_id=thumbnail_id,
        )
        if reservation.status != RESERVED:
            raise DuplicateRequestError(
                "idempotencyKey belongs to an earlier request that was already settled; use a new key"
            )

        thumbnail = Thumbnail(
            id=thumbnail_id,
            user_id=user_id,
            idempotency_key=req.idempotency_key,
            video_title=req.video_title,
            description=req.description,
            style=template_id,
            source_image_url=req.source_image_url,
            status="pending",
            stage="pending",
            reservation_id=reservation.id,
            credit_cost=cost,
            attempts=0,
        )
        db.add(thumbnail)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await get_by_idempotency_key(db, user_id, req.idempotency_key)
            if existing is None:
                raise
            return existing

        logger.info("Accepted generation %s for user %s (%s credits)", thumbnail_id, user_id, cost)
        return thumbnail


async def _claim(thumbnail_id: str) -> bool:
    """Take the run lease; fails while another live run holds it."""
    now = _utcnow()
    lease = timedelta(seconds=max(int(settings.GENERATION_LEASE_SECONDS), 1))
    async with async_session_maker() as db:
        result = await db.execute(
            update(Thumbnail)
            .where(
                Thumbnail.id == thumbnail_id,
                Thumbnail.status.in_(ACTIVE_STATUSES),
                or_(Thumbnail.lease_expires_at.is_(None), Thumbnail.lease_expires_at < now),
            )
            .values(lease_expires_at=now + lease, attempts=Thumbnail.attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1


async def _set_fields(thumbnail_id: str, **fields: Any) -> None:
    async with async_session_maker() as db:
        await update_thumbnail(db, thumbnail_id, **fields)


async def _drive(thumbnail_id: str) -> Thumbnail:
    async with async_session_maker() as db:
        thumbnail = await get_thumbnail(db, thumbnail_id)
        template = await get_template(db, thumbnail.style, thumbnail.user_id)
        style_params = dict(template.style_params or {})
        video_title = thumbnail.video_title
        description = thumbnail.description or ""
        source_image_url = thumbnail.source_image_url
        recognition_json = thumbnail.recognition_json
        storage_key = thumbnail.storage_key
        reservation_id = thumbnail.reservation_id

    if not storage_key:
        if recognition_json:
            recognition = RecognitionResult(**recognition_json)
        else:
            await _set_fields(thumbnail_id, status="processing", stage="recognizing")
            recognition = await call_with_retries(
                "recognition",
                recognize_content,
                video_title,
                description,
                source_image_url,
                api_key=settings.OPENAI_API_KEY,
                model=settings.RECOGNITION_MODEL,
            )
            await _set_fields(thumbnail_id, recognition_json=recognition.model_dump())

        await _set_fields(thumbnail_id, status="processing", stage="rendering")
        rendered = await call_with_retries(
            "inference",
            render_thumbnail,
            video_title,
            recognition,
            style_params,
            api_key=settings.OPENAI_API_KEY,
            model=settings.INFERENCE_MODEL,
            size=settings.INFERENCE_IMAGE_SIZE,
        )

        await _set_fields(thumbnail_id, stage="storing")
        locator = await get_artifact_storage().store(rendered.data, rendered.content_type)
        await _set_fields(
            thumbnail_id,
            storage_key=locator.key,
            content_type=locator.content_type,
            size_bytes=locator.size_bytes,
        )

    async with async_session_maker() as db:
        if reservation_id:
            await commit_reservation(reservation_id, db)
        await update_thumbnail(
            db,
            thumbnail_id,
            status="completed",
            stage="completed",
            completed_at=_utcnow(),
            lease_expires_at=None,
            error_code=None,
            error_message=None,
        )
        thumbnail = await get_thumbnail(db, thumbnail_id)
    logger.info("Generation %s completed", thumbnail_id)
    return thumbnail


async def fail_generation(thumbnail_id: str, error_code: str, error_message: str) -> None:
    """Refund the reservation, then mark the record failed. No-op once terminal."""
    async with async_session_maker() as db:
        try:
            thumbnail = await get_thumbnail(db, thumbnail_id)
        except NotFoundError:
            logger.warning("Generation %s vanished before it could be failed", thumbnail_id)
            return
        if thumbnail.status in TERMINAL_STATUSES:
            return

        if thumbnail.reservation_id:
            try:
                await refund_reservation(thumbnail.reservation_id, db)
            except ReservationStateError:
                # Already committed: the artifact is stored and paid for.
                if thumbnail.storage_key:
                    await update_thumbnail(
                        db,
                        thumbnail_id,
                        status="completed",
                        stage="completed",
                        completed_at=_utcnow(),
                        lease_expires_at=None,
                    )
                    return
                raise

        await update_thumbnail(
            db,
            thumbnail_id,
            status="failed",
            stage="failed",
            error_code=error_code,
            error_message=(error_message or "")[:1000],
            completed_at=_utcnow(),
            lease_expires_at=None,
        )
    logger.info("Generation %s failed (%s); credits refunded", thumbnail_id, error_code)


async def run_generation(thumbnail_id: str) -> Thumbnail:
    """Drive one accepted request to a terminal state.

    Raises the underlying error after the refund when the run fails.
    """
    if not await _claim(thumbnail_id):
        async with async_session_maker() as db:
            return await get_thumbnail(db, thumbnail_id)

    try:
        return await _drive(thumbnail_id)
    except asyncio.CancelledError:
        await asyncio.shield(
            fail_generation(thumbnail_id, "cancelled", "Generation was cancelled before completion.")
        )
        raise
    except ThumbnailServiceError as exc:
        logger.warning("Generation %s failed: %s", thumbnail_id, exc.message)
        await fail_generation(thumbnail_id, exc.code, exc.message)
        raise
    except Exception as exc:
        logger.exception("Generation %s failed unexpectedly: %s", thumbnail_id, exc)
        await fail_generation(thumbnail_id, "internal_error", str(exc))
        raise


def _on_generation_done(task: "asyncio.Task[Thumbnail]") -> None:
    _inflight.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Background generation task %s ended with %r", task.get_name(), exc)


def spawn_generation(thumbnail_id: str) -> "asyncio.Task[Thumbnail]":
    """Start a run that outlives the caller."""
    task = asyncio.create_task(run_generation(thumbnail_id), name=f"generation:{thumbnail_id}")
    _inflight.add(task)
    task.add_done_callback(_on_generation_done)
    return task


async def generate_thumbnail(
    user_id: str,
    request: GenerationRequest,
    *,
    email: Optional[str] = None,
) -> Thumbnail:
    """Submit and run a request inline.

    The run is shielded: cancelling the caller does not stop it short of
    completed or failed-and-refunded.
    """
    thumbnail = await submit_generation(user_id, request, email=email)
    if thumbnail.status in TERMINAL_STATUSES:
        return thumbnail
    return await asyncio.shield(spawn_generation(thumbnail.id))


async def run_generation_job_async(thumbnail_id: str) -> None:
    try:
        await run_generation(thumbnail_id)
    except ThumbnailServiceError as exc:
        logger.info("Generation job %s finished as failed: %s", thumbnail_id, exc.message)


def run_generation_job(thumbnail_id: str) -> None:
    """RQ worker entrypoint for generation jobs."""
    asyncio.run(run_generation_job_async(thumbnail_id))
