"""Durable generation job queue helpers (Redis/RQ) and startup recovery."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from redis import Redis
from rq import Queue, Retry
from rq.job import Job
from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.credit_reservation import CreditReservation
from models.thumbnail import Thumbnail
from services.credits import RESERVED, refund_reservation
from services.errors import ReservationStateError
from services.generation import ACTIVE_STATUSES, fail_generation

logger = logging.getLogger(__name__)

GENERATION_QUEUE_NAME = "generation_jobs"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_generation_queue() -> Queue:
    """Return the configured generation queue."""
    return Queue(
        name=GENERATION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=900,
    )


def enqueue_generation_job(thumbnail_id: str) -> Job:
    """Enqueue a generation run; re-runs resume from the last checkpoint."""
    queue = get_generation_queue()
    return queue.enqueue(
        "services.generation.run_generation_job",
        thumbnail_id,
        job_id=f"generation:{thumbnail_id}",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=900,
        result_ttl=86400,
        failure_ttl=86400,
    )


async def recover_stalled_generations() -> int:
    """Refund and fail runs whose lease lapsed without reaching a terminal state."""
    now = datetime.now(timezone.utc)
    never_claimed_cutoff = now - timedelta(seconds=max(int(settings.GENERATION_LEASE_SECONDS), 1))
    async with async_session_maker() as db:
        result = await db.execute(
            select(Thumbnail.id).where(
                Thumbnail.status.in_(ACTIVE_STATUSES),
                (
                    (Thumbnail.lease_expires_at.is_not(None) & (Thumbnail.lease_expires_at < now))
                    | (Thumbnail.lease_expires_at.is_(None) & (Thumbnail.created_at < never_claimed_cutoff))
                ),
            )
        )
        stalled = [row[0] for row in result.all()]

    for thumbnail_id in stalled:
        await fail_generation(
            thumbnail_id,
            "stalled",
            "Generation was interrupted. Credits were refunded; submit the request again.",
        )
    return len(stalled)


async def release_orphaned_reservations() -> int:
    """Refund reservations that never got a thumbnail record."""
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=max(int(settings.RESERVATION_ORPHAN_MINUTES), 1))
    released = 0
    async with async_session_maker() as db:
        result = await db.execute(
            select(CreditReservation.id).where(
                CreditReservation.status == RESERVED,
                CreditReservation.created_at < cutoff,
                ~select(Thumbnail.id).where(Thumbnail.reservation_id == CreditReservation.id).exists(),
            )
        )
        orphan_ids = [row[0] for row in result.all()]
        for reservation_id in orphan_ids:
            try:
                await refund_reservation(reservation_id, db)
                released += 1
            except ReservationStateError:
                logger.info("Reservation %s settled concurrently; skipping", reservation_id)
    return released
