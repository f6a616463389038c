"""Credit ledger: reservations, grants and balance accounting.

Every balance change goes through ``_apply_delta``, a version-guarded
compare-and-swap on ``users``, and is recorded in ``credit_transactions``
inside the same database transaction. Transaction ids double as idempotency
keys, so a replayed operation hits the primary key instead of a second debit.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_ledger import CreditTransaction
from models.credit_reservation import CreditReservation
from models.user import User
from services.errors import (
    InsufficientCreditsError,
    LedgerConflictError,
    NotFoundError,
    ReservationStateError,
    ValidationError,
)

logger = logging.getLogger(__name__)

RESERVED = "reserved"
COMMITTED = "committed"
REFUNDED = "refunded"

RECENT_TRANSACTION_LIMIT = 30


def reserve_transaction_id(user_id: str, idempotency_key: str) -> str:
    return f"reserve:{user_id}:{idempotency_key}"


def commit_transaction_id(reservation_id: str) -> str:
    return f"commit:{reservation_id}"


def refund_transaction_id(reservation_id: str) -> str:
    return f"refund:{reservation_id}"


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.credits).where(User.id == user_id))
    credits = result.scalar_one_or_none()
    if credits is None:
        raise NotFoundError("User not found")
    return int(credits)


async def get_ledger_total(user_id: str, db: AsyncSession) -> int:
    """Sum of all transaction deltas; always equals the stored balance."""
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.delta_credits), 0)).where(
            CreditTransaction.user_id == user_id
        )
    )
    return int(result.scalar() or 0)


async def _apply_delta(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    ceiling: Optional[int] = None,
) -> Tuple[int, int]:
    """Apply ``delta`` with optimistic retries. Returns (applied, balance_after).

    Does not commit; the caller records the transaction row and commits both.
    """
    max_attempts = max(int(settings.LEDGER_MAX_CONFLICT_RETRIES), 1)
    for _ in range(max_attempts):
        result = await db.execute(select(User.credits, User.version).where(User.id == user_id))
        row = result.one_or_none()
        if row is None:
            raise NotFoundError("User not found")
        credits, version = int(row.credits), int(row.version)

        applied = int(delta)
        if ceiling is not None and applied > 0:
            applied = min(applied, max(int(ceiling) - credits, 0))
        if credits + applied < 0:
            raise InsufficientCreditsError(required=-applied, available=credits)
        if applied == 0:
            return 0, credits

        outcome = await db.execute(
            update(User)
            .where(
                User.id == user_id,
                User.version == version,
                User.credits + applied >= 0,
            )
            .values(credits=User.credits + applied, version=User.version + 1)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 1:
            return applied, credits + applied
        logger.debug("Ledger version conflict for user %s at version %s; retrying", user_id, version)

    raise LedgerConflictError(f"Could not update credits for user {user_id}; too much contention.")


async def _find_reservation(user_id: str, idempotency_key: str, db: AsyncSession) -> Optional[CreditReservation]:
    result = await db.execute(
        select(CreditReservation)
        .where(
            CreditReservation.user_id == user_id,
            CreditReservation.idempotency_key == idempotency_key,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_reservation(reservation_id: str, db: AsyncSession) -> CreditReservation:
    result = await db.execute(
        select(CreditReservation)
        .where(CreditReservation.id == reservation_id)
        .execution_options(populate_existing=True)
    )
    reservation = result.scalar_one_or_none()
    if reservation is None:
        raise NotFoundError("Reservation not found")
    return reservation


async def reserve_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    idempotency_key: str,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> CreditReservation:
    """Debit ``amount`` provisionally. A repeated key returns the first reservation."""
    cost = int(amount)
    if cost < 0:
        raise ValidationError("Reservation amount must not be negative")
    key = str(idempotency_key or "").strip()
    if not key:
        raise ValidationError("idempotency_key is required")

    existing = await _find_reservation(user_id, key, db)
    if existing is not None:
        return existing

    try:
        _, balance_after = await _apply_delta(user_id, db, delta=-cost)
        reservation = CreditReservation(
            id=str(uuid.uuid4()),
            user_id=user_id,
            idempotency_key=key,
            amount=cost,
            status=RESERVED,
        )
        db.add(reservation)
        await db.flush()
        db.add(
            CreditTransaction(
                id=reserve_transaction_id(user_id, key),
                user_id=user_id,
                reason="reserve",
                delta_credits=-cost,
                balance_after=balance_after,
                reservation_id=reservation.id,
                reference_type=reference_type,
                reference_id=reference_id,
            )
        )
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _find_reservation(user_id, key, db)
        if existing is not None:
            return existing
        raise
    except Exception:
        await db.rollback()
        raise

    logger.info("Reserved %s credits for user %s (reservation %s)", cost, user_id, reservation.id)
    return reservation


async def commit_reservation(reservation_id: str, db: AsyncSession) -> CreditReservation:
    """Finalize a reservation. No balance change; idempotent."""
    now = datetime.now(timezone.utc)
    try:
        outcome = await db.execute(
            update(CreditReservation)
            .where(CreditReservation.id == reservation_id, CreditReservation.status == RESERVED)
            .values(status=COMMITTED, settled_at=now)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 1:
            reservation = await get_reservation(reservation_id, db)
            balance = await get_credit_balance(reservation.user_id, db)
            db.add(
                CreditTransaction(
                    id=commit_transaction_id(reservation_id),
                    user_id=reservation.user_id,
                    reason="commit",
                    delta_credits=0,
                    balance_after=balance,
                    reservation_id=reservation_id,
                )
            )
            await db.commit()
            return reservation
        await db.rollback()
    except Exception:
        await db.rollback()
        raise

    reservation = await get_reservation(reservation_id, db)
    if reservation.status == COMMITTED:
        return reservation
    raise ReservationStateError(f"Reservation {reservation_id} is {reservation.status}; cannot commit.")


async def refund_reservation(reservation_id: str, db: AsyncSession) -> CreditReservation:
    """Return the reserved amount to the user exactly once."""
    now = datetime.now(timezone.utc)
    try:
        outcome = await db.execute(
            update(CreditReservation)
            .where(CreditReservation.id == reservation_id, CreditReservation.status == RESERVED)
            .values(status=REFUNDED, settled_at=now)
            .execution_options(synchronize_session=False)
        )
        if outcome.rowcount == 1:
            reservation = await get_reservation(reservation_id, db)
            _, balance_after = await _apply_delta(reservation.user_id, db, delta=int(reservation.amount))
            db.add(
                CreditTransaction(
                    id=refund_transaction_id(reservation_id),
                    user_id=reservation.user_id,
                    reason="refund",
                    delta_credits=int(reservation.amount),
                    balance_after=balance_after,
                    reservation_id=reservation_id,
                )
            )
            await db.commit()
            logger.info(
                "Refunded %s credits to user %s (reservation %s)",
                reservation.amount,
                reservation.user_id,
                reservation_id,
            )
            return reservation
        await db.rollback()
    except Exception:
        await db.rollback()
        raise

    reservation = await get_reservation(reservation_id, db)
    if reservation.status == REFUNDED:
        return reservation
    raise ReservationStateError(f"Reservation {reservation_id} is {reservation.status}; cannot refund.")


async def grant_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    idempotency_key: str,
    ceiling: Optional[int] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    period_key: Optional[str] = None,
) -> Optional[CreditTransaction]:
    """Add credits, capped at ``ceiling``. Returns None when the key was already applied."""
    grant = int(amount)
    if grant < 0:
        raise ValidationError("Grant amount must not be negative")

    existing = await db.execute(select(CreditTransaction.id).where(CreditTransaction.id == idempotency_key))
    if existing.scalar_one_or_none():
        return None

    try:
        applied, balance_after = await _apply_delta(user_id, db, delta=grant, ceiling=ceiling)
        entry = CreditTransaction(
            id=idempotency_key,
            user_id=user_id,
            reason="grant",
            delta_credits=applied,
            balance_after=balance_after,
            reference_type=reference_type,
            reference_id=reference_id,
            period_key=period_key,
        )
        db.add(entry)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        return None
    except Exception:
        await db.rollback()
        raise
    return entry


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    user_row = (
        await db.execute(select(User.credits, User.plan).where(User.id == user_id))
    ).one_or_none()
    if user_row is None:
        raise NotFoundError("User not found")

    reserved = await db.execute(
        select(func.coalesce(func.sum(CreditReservation.amount), 0)).where(
            CreditReservation.user_id == user_id,
            CreditReservation.status == RESERVED,
        )
    )
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.desc())
        .limit(RECENT_TRANSACTION_LIMIT)
    )
    entries = result.scalars().all()
    return {
        "balance": int(user_row.credits),
        "plan": user_row.plan,
        "reserved": int(reserved.scalar() or 0),
        "recent_transactions": [
            {
                "id": entry.id,
                "reason": entry.reason,
                "delta_credits": entry.delta_credits,
                "balance_after": entry.balance_after,
                "reservation_id": entry.reservation_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }
