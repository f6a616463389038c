"""Lazy user provisioning for verified identities."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services.errors import ValidationError
from services.subscriptions import get_subscription, grant_due, upsert_subscription

logger = logging.getLogger(__name__)


def placeholder_email(user_id: str) -> str:
    return f"{user_id}@local.invalid"


async def _get_user(db: AsyncSession, user_id: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def _create_user(db: AsyncSession, user_id: str, email: Optional[str]) -> User:
    candidates = [email, placeholder_email(user_id)] if email else [placeholder_email(user_id)]
    for candidate in candidates:
        db.add(User(id=user_id, email=candidate, plan="free", credits=0, version=0))
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            user = await _get_user(db, user_id)
            if user is not None:
                # Created concurrently by another request for the same subject.
                return user
            logger.warning("Email for user %s is already registered to another account", user_id)
            continue
        return await _get_user(db, user_id)
    raise ValidationError("Could not register this identity; its email belongs to another account.")


async def ensure_user(db: AsyncSession, user_id: str, email: Optional[str] = None) -> User:
    """Return the user with a subscription and its first grant in place.

    Provisioning spans several commits, so every call re-checks the
    subscription and the first grant; a request racing the creator, or one
    following a half-finished signup, waits on the same idempotent grant.
    """
    user = await _get_user(db, user_id)
    if user is None:
        user = await _create_user(db, user_id, email)

    subscription = await get_subscription(db, user_id)
    if subscription is None:
        subscription = await upsert_subscription(db, user_id, "free")
    if int(subscription.period_index or 0) == 0:
        await grant_due(db, user_id=user_id)
    return user
