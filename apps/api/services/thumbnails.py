"""Thumbnail metadata store: primary lookups and the by-owner index."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.thumbnail import Thumbnail
from services.errors import GenerationInProgressError, NotFoundError, NotOwnerError
from services.storage import ArtifactStorage

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = ("completed", "failed")
DEFAULT_LIST_LIMIT = 100


async def put_thumbnail(db: AsyncSession, thumbnail: Thumbnail) -> Thumbnail:
    """Insert or overwrite a record by id."""
    merged = await db.merge(thumbnail)
    await db.commit()
    return merged


async def update_thumbnail(db: AsyncSession, thumbnail_id: str, **fields: Any) -> None:
    """Write selected columns of one record and commit."""
    if not fields:
        return
    await db.execute(
        update(Thumbnail)
        .where(Thumbnail.id == thumbnail_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )
    await db.commit()


async def get_thumbnail(db: AsyncSession, thumbnail_id: str) -> Thumbnail:
    result = await db.execute(
        select(Thumbnail)
        .where(Thumbnail.id == thumbnail_id)
        .execution_options(populate_existing=True)
    )
    thumbnail = result.scalar_one_or_none()
    if thumbnail is None:
        raise NotFoundError("Thumbnail not found")
    return thumbnail


async def get_owned_thumbnail(db: AsyncSession, thumbnail_id: str, user_id: str) -> Thumbnail:
    """Fetch a thumbnail for its owner; other users get the same 404 as a missing id."""
    thumbnail = await get_thumbnail(db, thumbnail_id)
    if thumbnail.user_id != user_id:
        raise NotFoundError("Thumbnail not found")
    return thumbnail


async def get_by_idempotency_key(db: AsyncSession, user_id: str, idempotency_key: str) -> Optional[Thumbnail]:
    result = await db.execute(
        select(Thumbnail)
        .where(Thumbnail.user_id == user_id, Thumbnail.idempotency_key == idempotency_key)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_by_user(db: AsyncSession, user_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[Thumbnail]:
    result = await db.execute(
        select(Thumbnail)
        .where(Thumbnail.user_id == user_id)
        .order_by(Thumbnail.created_at.desc(), Thumbnail.id.desc())
        .limit(max(int(limit), 1))
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def delete_thumbnail(
    db: AsyncSession,
    thumbnail_id: str,
    requesting_user_id: str,
) -> None:
    """Delete a record owned by ``requesting_user_id``.

    The artifact file stays: its content key may be shared by another record
    or by a run that stored it but has not yet checkpointed the key.
    ``sweep_orphaned_artifacts`` removes it once nothing references it.
    """
    thumbnail = await get_thumbnail(db, thumbnail_id)
    if thumbnail.user_id != requesting_user_id:
        raise NotOwnerError("Only the owner can delete this thumbnail")
    if thumbnail.status not in TERMINAL_STATUSES:
        raise GenerationInProgressError("Thumbnail is still being generated; retry once it finishes")

    await db.execute(
        delete(Thumbnail).where(Thumbnail.id == thumbnail_id, Thumbnail.user_id == requesting_user_id)
    )
    await db.commit()


async def sweep_orphaned_artifacts(
    db: AsyncSession,
    storage: ArtifactStorage,
    *,
    grace_seconds: Optional[float] = None,
    now: Optional[float] = None,
) -> int:
    """Remove artifact files that no thumbnail references.

    Only files untouched for the grace period are candidates, and each one is
    re-checked on disk right before removal. A run that stores a shared key
    refreshes its mtime, so its artifact survives until the key is
    checkpointed on its own record.
    """
    if grace_seconds is None:
        grace_seconds = max(int(settings.ARTIFACT_ORPHAN_GRACE_SECONDS), int(settings.GENERATION_LEASE_SECONDS))
    cutoff = (now if now is not None else time.time()) - float(grace_seconds)

    removed = 0
    for key, _mtime in list(storage.iter_artifacts(cutoff)):
        referenced = await db.execute(select(Thumbnail.id).where(Thumbnail.storage_key == key).limit(1))
        if referenced.scalar_one_or_none() is not None:
            continue
        if await storage.delete_if_stale(key, cutoff):
            removed += 1
            logger.info("Removed orphaned artifact %s", key)
    return removed


def serialize_thumbnail(thumbnail: Thumbnail, storage: Optional[ArtifactStorage] = None) -> Dict[str, Any]:
    url = None
    if storage is not None and thumbnail.storage_key and thumbnail.status == "completed":
        url = storage.retrieve(thumbnail.storage_key)
    return {
        "id": thumbnail.id,
        "user_id": thumbnail.user_id,
        "video_title": thumbnail.video_title,
        "description": thumbnail.description or "",
        "style": thumbnail.style,
        "status": thumbnail.status,
        "stage": thumbnail.stage,
        "url": url,
        "storage_key": thumbnail.storage_key,
        "credit_cost": int(thumbnail.credit_cost or 0),
        "idempotency_key": thumbnail.idempotency_key,
        "error_code": thumbnail.error_code,
        "error_message": thumbnail.error_message,
        "created_at": thumbnail.created_at.isoformat() if thumbnail.created_at else None,
        "completed_at": thumbnail.completed_at.isoformat() if thumbnail.completed_at else None,
    }
