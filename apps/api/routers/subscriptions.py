"""Subscription router. Plan changes apply any grant that is already due."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.schemas import SubscriptionRequest, SubscriptionResponse
from services.credits import get_credit_balance
from services.subscriptions import get_subscription, grant_due, upsert_subscription
from services.users import ensure_user

router = APIRouter()
logger = logging.getLogger(__name__)


@router.post("", response_model=SubscriptionResponse)
async def change_subscription(
    request: SubscriptionRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth.user_id, auth.email)
    await upsert_subscription(db, auth.user_id, request.plan)
    applied = await grant_due(db, user_id=auth.user_id)
    if applied:
        logger.info("Applied %s due grant(s) for user %s", len(applied), auth.user_id)

    subscription = await get_subscription(db, auth.user_id)
    return SubscriptionResponse(
        id=subscription.id,
        user_id=subscription.user_id,
        plan=subscription.plan,
        periodic_credit_grant=int(subscription.periodic_credit_grant or 0),
        credit_ceiling=int(subscription.credit_ceiling or 0),
        period_index=int(subscription.period_index or 0),
        renewal_at=subscription.renewal_at.isoformat() if subscription.renewal_at else None,
        status=subscription.status,
        balance=await get_credit_balance(auth.user_id, db),
        grants_applied=len(applied),
    )
