"""Subscription plans, periodic credit grants and quota ceilings."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.subscription import Subscription
from models.user import User
from services.credits import grant_credits
from services.errors import ValidationError

logger = logging.getLogger(__name__)


PLANS: Dict[str, Dict[str, Any]] = {
    "free": {
        "name": "Free Tier",
        "credits": 10,
        "ceiling": 10,
        "price_per_month": 0.0,
        "features": ["10 thumbnails per month", "Basic styles", "Standard quality"],
    },
    "pro": {
        "name": "Pro",
        "credits": 100,
        "ceiling": 200,
        "price_per_month": 29.99,
        "features": ["100 thumbnails per month", "Advanced styles", "HD quality", "Priority processing"],
    },
    "enterprise": {
        "name": "Enterprise",
        "credits": 1000,
        "ceiling": 2000,
        "price_per_month": 199.99,
        "features": ["1000 thumbnails per month", "Custom styles", "4K quality", "Dedicated support", "API access"],
    },
}


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _period() -> timedelta:
    return timedelta(days=max(int(settings.SUBSCRIPTION_PERIOD_DAYS), 1))


def grant_key(subscription_id: str, period_index: int) -> str:
    return f"grant:{subscription_id}:{period_index}"


def get_plan(plan: str) -> Dict[str, Any]:
    plan_id = str(plan or "").strip().lower()
    if plan_id not in PLANS:
        raise ValidationError(f"Unknown plan '{plan}'. Choose one of: {', '.join(sorted(PLANS))}.")
    return PLANS[plan_id]


async def get_subscription(db: AsyncSession, user_id: str) -> Optional[Subscription]:
    result = await db.execute(
        select(Subscription)
        .where(Subscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def upsert_subscription(
    db: AsyncSession,
    user_id: str,
    plan: str,
    *,
    now: Optional[datetime] = None,
) -> Subscription:
    """Create or switch a user's plan.

    A new subscription is due immediately. A plan change keeps the current
    period; an upgrade is topped up by ``grant_due`` with the difference
    between the new plan's grant and what the period already received.
    """
    plan_id = str(plan or "").strip().lower()
    plan_def = get_plan(plan_id)
    current = now or datetime.now(timezone.utc)

    subscription = await get_subscription(db, user_id)
    if subscription is None:
        subscription = Subscription(
            user_id=user_id,
            plan=plan_id,
            periodic_credit_grant=plan_def["credits"],
            credit_ceiling=plan_def["ceiling"],
            period_index=0,
            period_entitlement=0,
            renewal_at=current,
            status="active",
        )
        db.add(subscription)
    else:
        subscription.plan = plan_id
        subscription.periodic_credit_grant = plan_def["credits"]
        subscription.credit_ceiling = plan_def["ceiling"]
        subscription.status = "active"

    await db.execute(
        update(User)
        .where(User.id == user_id)
        .values(plan=plan_id)
        .execution_options(synchronize_session=False)
    )
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent first subscription for the same user; keep the winner's row.
        await db.rollback()
        subscription = await get_subscription(db, user_id)
        if subscription is None:
            raise
    await db.refresh(subscription)
    return subscription


async def _top_up_open_period(db: AsyncSession, subscription_id: str) -> Optional[Dict[str, Any]]:
    row = (
        await db.execute(
            select(
                Subscription.user_id,
                Subscription.plan,
                Subscription.periodic_credit_grant,
                Subscription.credit_ceiling,
                Subscription.period_index,
                Subscription.period_entitlement,
            ).where(Subscription.id == subscription_id)
        )
    ).one_or_none()
    if row is None or int(row.period_index) == 0:
        return None
    entitled = int(row.periodic_credit_grant)
    already = int(row.period_entitlement or 0)
    if entitled <= already:
        return None

    open_period = int(row.period_index) - 1
    entry = await grant_credits(
        row.user_id,
        db,
        amount=entitled - already,
        idempotency_key=f"{grant_key(subscription_id, open_period)}:upgrade:{entitled}",
        ceiling=row.credit_ceiling,
        reference_type="subscription",
        reference_id=subscription_id,
        period_key=str(open_period),
    )
    await db.execute(
        update(Subscription)
        .where(
            Subscription.id == subscription_id,
            Subscription.period_index == row.period_index,
            Subscription.period_entitlement < entitled,
        )
        .values(period_entitlement=entitled)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if entry is None:
        return None
    return {
        "subscription_id": subscription_id,
        "user_id": row.user_id,
        "plan": row.plan,
        "period_index": open_period,
        "kind": "upgrade",
        "credits_granted": int(entry.delta_credits),
        "balance_after": int(entry.balance_after),
    }


async def grant_due(
    db: AsyncSession,
    now: Optional[datetime] = None,
    *,
    user_id: Optional[str] = None,
) -> List[Dict[str, Any]]:
    """Apply every grant whose renewal time has passed and advance the schedule.

    Upgrades within the open period are topped up first. Safe to run
    concurrently or repeatedly: each grant is keyed by subscription id and
    period index, and the schedule only advances from the period index that
    was read.
    """
    current = now or datetime.now(timezone.utc)
    query = select(Subscription.id).where(
        Subscription.status == "active",
        or_(
            Subscription.renewal_at <= current,
            and_(
                Subscription.period_index > 0,
                Subscription.periodic_credit_grant > Subscription.period_entitlement,
            ),
        ),
    )
    if user_id:
        query = query.where(Subscription.user_id == user_id)
    due_ids = (await db.execute(query)).scalars().all()

    applied: List[Dict[str, Any]] = []
    for subscription_id in due_ids:
        top_up = await _top_up_open_period(db, subscription_id)
        if top_up is not None:
            applied.append(top_up)

        while True:
            result = await db.execute(
                select(
                    Subscription.user_id,
                    Subscription.plan,
                    Subscription.periodic_credit_grant,
                    Subscription.credit_ceiling,
                    Subscription.period_index,
                    Subscription.renewal_at,
                ).where(Subscription.id == subscription_id)
            )
            row = result.one_or_none()
            if row is None or _as_utc(row.renewal_at) > current:
                break

            key = grant_key(subscription_id, int(row.period_index))
            entry = await grant_credits(
                row.user_id,
                db,
                amount=int(row.periodic_credit_grant),
                idempotency_key=key,
                ceiling=row.credit_ceiling,
                reference_type="subscription",
                reference_id=subscription_id,
                period_key=str(row.period_index),
            )
            if entry is not None:
                applied.append(
                    {
                        "subscription_id": subscription_id,
                        "user_id": row.user_id,
                        "plan": row.plan,
                        "period_index": int(row.period_index),
                        "kind": "period",
                        "credits_granted": int(entry.delta_credits),
                        "balance_after": int(entry.balance_after),
                    }
                )

            advanced = await db.execute(
                update(Subscription)
                .where(
                    Subscription.id == subscription_id,
                    Subscription.period_index == row.period_index,
                )
                .values(
                    period_index=Subscription.period_index + 1,
                    period_entitlement=int(row.periodic_credit_grant),
                    renewal_at=_as_utc(row.renewal_at) + _period(),
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if advanced.rowcount != 1:
                logger.info("Subscription %s advanced concurrently; re-reading", subscription_id)

    if applied:
        logger.info("Applied %s subscription grants", len(applied))
    return applied
