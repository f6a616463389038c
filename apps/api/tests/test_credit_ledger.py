import asyncio

import pytest
from sqlalchemy.future import select

from models.credit_ledger import CreditTransaction
from services.credits import (
    COMMITTED,
    REFUNDED,
    RESERVED,
    commit_reservation,
    get_credit_balance,
    get_credit_summary,
    get_ledger_total,
    grant_credits,
    refund_reservation,
    reserve_credits,
)
from services.errors import InsufficientCreditsError, ReservationStateError, ValidationError
from services.users import ensure_user


LEDGER_USER_ID = "ledger-user"


async def _transactions(db, user_id):
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.created_at.asc())
    )
    return result.scalars().all()


@pytest.mark.asyncio
async def test_new_user_receives_free_plan_grant(db):
    await ensure_user(db, LEDGER_USER_ID)

    assert await get_credit_balance(LEDGER_USER_ID, db) == 10
    transactions = await _transactions(db, LEDGER_USER_ID)
    assert [entry.reason for entry in transactions] == ["grant"]

    # A second call must not grant again.
    await ensure_user(db, LEDGER_USER_ID)
    assert await get_credit_balance(LEDGER_USER_ID, db) == 10


@pytest.mark.asyncio
async def test_reserve_commit_refund_keep_balance_equal_to_ledger_sum(db):
    await ensure_user(db, LEDGER_USER_ID)

    first = await reserve_credits(LEDGER_USER_ID, db, amount=3, idempotency_key="job-1")
    second = await reserve_credits(LEDGER_USER_ID, db, amount=4, idempotency_key="job-2")
    assert first.status == RESERVED
    assert await get_credit_balance(LEDGER_USER_ID, db) == 3

    committed = await commit_reservation(first.id, db)
    refunded = await refund_reservation(second.id, db)
    assert committed.status == COMMITTED
    assert refunded.status == REFUNDED

    balance = await get_credit_balance(LEDGER_USER_ID, db)
    assert balance == 7
    assert balance == await get_ledger_total(LEDGER_USER_ID, db)

    reasons = [entry.reason for entry in await _transactions(db, LEDGER_USER_ID)]
    assert reasons.count("reserve") == 2
    assert reasons.count("commit") == 1
    assert reasons.count("refund") == 1


@pytest.mark.asyncio
async def test_reserve_is_idempotent_per_key(db):
    await ensure_user(db, LEDGER_USER_ID)

    first = await reserve_credits(LEDGER_USER_ID, db, amount=2, idempotency_key="same-key")
    replay = await reserve_credits(LEDGER_USER_ID, db, amount=2, idempotency_key="same-key")

    assert replay.id == first.id
    assert await get_credit_balance(LEDGER_USER_ID, db) == 8


@pytest.mark.asyncio
async def test_insufficient_credits_leaves_no_trace(db):
    await ensure_user(db, LEDGER_USER_ID)
    before = await _transactions(db, LEDGER_USER_ID)

    with pytest.raises(InsufficientCreditsError) as exc_info:
        await reserve_credits(LEDGER_USER_ID, db, amount=11, idempotency_key="too-much")

    assert exc_info.value.required == 11
    assert exc_info.value.available == 10
    assert exc_info.value.status_code == 402
    assert await get_credit_balance(LEDGER_USER_ID, db) == 10
    assert len(await _transactions(db, LEDGER_USER_ID)) == len(before)


@pytest.mark.asyncio
async def test_settlement_is_idempotent_and_exclusive(db):
    await ensure_user(db, LEDGER_USER_ID)
    reservation = await reserve_credits(LEDGER_USER_ID, db, amount=5, idempotency_key="settle")

    await refund_reservation(reservation.id, db)
    await refund_reservation(reservation.id, db)
    assert await get_credit_balance(LEDGER_USER_ID, db) == 10

    with pytest.raises(ReservationStateError):
        await commit_reservation(reservation.id, db)

    other = await reserve_credits(LEDGER_USER_ID, db, amount=1, idempotency_key="settle-2")
    await commit_reservation(other.id, db)
    await commit_reservation(other.id, db)
    with pytest.raises(ReservationStateError):
        await refund_reservation(other.id, db)
    assert await get_credit_balance(LEDGER_USER_ID, db) == 9


@pytest.mark.asyncio
async def test_grant_respects_ceiling_and_replay(db):
    await ensure_user(db, LEDGER_USER_ID)

    entry = await grant_credits(LEDGER_USER_ID, db, amount=50, idempotency_key="bonus:1", ceiling=25)
    assert entry is not None
    assert entry.delta_credits == 15
    assert entry.balance_after == 25

    assert await grant_credits(LEDGER_USER_ID, db, amount=50, idempotency_key="bonus:1", ceiling=25) is None
    assert await get_credit_balance(LEDGER_USER_ID, db) == 25

    with pytest.raises(ValidationError):
        await grant_credits(LEDGER_USER_ID, db, amount=-1, idempotency_key="bonus:neg")


@pytest.mark.asyncio
async def test_concurrent_reservations_never_overdraw(session_maker):
    async with session_maker() as db:
        await ensure_user(db, LEDGER_USER_ID)

    async def attempt(index: int):
        async with session_maker() as session:
            try:
                await reserve_credits(LEDGER_USER_ID, session, amount=3, idempotency_key=f"race-{index}")
                return True
            except InsufficientCreditsError:
                return False

    outcomes = await asyncio.gather(*(attempt(i) for i in range(6)))

    assert outcomes.count(True) == 3
    async with session_maker() as db:
        balance = await get_credit_balance(LEDGER_USER_ID, db)
        assert balance == 1
        assert balance == await get_ledger_total(LEDGER_USER_ID, db)
        reserves = [entry for entry in await _transactions(db, LEDGER_USER_ID) if entry.reason == "reserve"]
        assert len(reserves) == 3


@pytest.mark.asyncio
async def test_credit_summary_reports_outstanding_reservations(db):
    await ensure_user(db, LEDGER_USER_ID)
    await reserve_credits(LEDGER_USER_ID, db, amount=4, idempotency_key="pending-1")

    summary = await get_credit_summary(LEDGER_USER_ID, db)

    assert summary["balance"] == 6
    assert summary["plan"] == "free"
    assert summary["reserved"] == 4
    assert summary["recent_transactions"][0]["reason"] == "reserve"
