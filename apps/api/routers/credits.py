"""Credits router."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.schemas import CreditSummaryResponse
from services.credits import get_credit_summary
from services.users import ensure_user

router = APIRouter()


@router.get("", response_model=CreditSummaryResponse)
async def credits_summary(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    await ensure_user(db, auth.user_id, auth.email)
    return CreditSummaryResponse(**await get_credit_summary(auth.user_id, db))
