import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from services.credits import commit_reservation, get_credit_balance, get_ledger_total, reserve_credits
from services.errors import ValidationError
from services.subscriptions import get_subscription, grant_due, upsert_subscription
from services.users import ensure_user


SUB_USER_ID = "subscriber-1"


@pytest.mark.asyncio
async def test_plan_upgrade_tops_up_the_open_period_and_respects_ceiling(db):
    await ensure_user(db, SUB_USER_ID)
    now = datetime.now(timezone.utc)
    renewal_before = (await get_subscription(db, SUB_USER_ID)).renewal_at

    subscription = await upsert_subscription(db, SUB_USER_ID, "pro", now=now)
    assert subscription.plan == "pro"
    assert subscription.credit_ceiling == 200
    assert subscription.renewal_at == renewal_before

    applied = await grant_due(db, now=now, user_id=SUB_USER_ID)
    assert [(grant["kind"], grant["credits_granted"]) for grant in applied] == [("upgrade", 90)]
    assert await get_credit_balance(SUB_USER_ID, db) == 100

    later = now + timedelta(days=31)
    applied = await grant_due(db, now=later)
    assert [grant["credits_granted"] for grant in applied] == [100]
    assert await get_credit_balance(SUB_USER_ID, db) == 200

    assert await grant_due(db, now=later) == []
    assert await get_credit_balance(SUB_USER_ID, db) == await get_ledger_total(SUB_USER_ID, db)


@pytest.mark.asyncio
async def test_toggling_plans_within_a_period_grants_the_upgrade_once(db):
    await ensure_user(db, SUB_USER_ID)

    await upsert_subscription(db, SUB_USER_ID, "pro")
    await grant_due(db, user_id=SUB_USER_ID)
    reservation = await reserve_credits(SUB_USER_ID, db, amount=60, idempotency_key="spend-most")
    await commit_reservation(reservation.id, db)
    assert await get_credit_balance(SUB_USER_ID, db) == 40

    for plan in ("free", "pro", "free", "pro"):
        await upsert_subscription(db, SUB_USER_ID, plan)
        assert await grant_due(db, user_id=SUB_USER_ID) == []

    assert await get_credit_balance(SUB_USER_ID, db) == 40
    subscription = await get_subscription(db, SUB_USER_ID)
    assert subscription.period_index == 1
    assert subscription.period_entitlement == 100


@pytest.mark.asyncio
async def test_further_upgrade_grants_only_the_remaining_difference(db):
    await ensure_user(db, SUB_USER_ID)

    await upsert_subscription(db, SUB_USER_ID, "pro")
    await grant_due(db, user_id=SUB_USER_ID)
    await upsert_subscription(db, SUB_USER_ID, "free")
    await grant_due(db, user_id=SUB_USER_ID)
    await upsert_subscription(db, SUB_USER_ID, "enterprise")
    applied = await grant_due(db, user_id=SUB_USER_ID)

    assert [grant["credits_granted"] for grant in applied] == [900]
    assert await get_credit_balance(SUB_USER_ID, db) == 1000


@pytest.mark.asyncio
async def test_same_plan_repost_does_not_grant_again(db):
    await ensure_user(db, SUB_USER_ID)

    await upsert_subscription(db, SUB_USER_ID, "free")

    assert await grant_due(db, user_id=SUB_USER_ID) == []
    assert await get_credit_balance(SUB_USER_ID, db) == 10


@pytest.mark.asyncio
async def test_missed_periods_are_caught_up(db):
    await ensure_user(db, SUB_USER_ID)
    reservation = await reserve_credits(SUB_USER_ID, db, amount=10, idempotency_key="spend-all")
    await commit_reservation(reservation.id, db)
    assert await get_credit_balance(SUB_USER_ID, db) == 0

    applied = await grant_due(db, now=datetime.now(timezone.utc) + timedelta(days=95))

    assert [grant["period_index"] for grant in applied] == [1, 2, 3]
    assert [grant["credits_granted"] for grant in applied] == [10, 0, 0]
    assert await get_credit_balance(SUB_USER_ID, db) == 10
    subscription = await get_subscription(db, SUB_USER_ID)
    assert subscription.period_index == 4


@pytest.mark.asyncio
async def test_concurrent_grant_runs_apply_each_period_once(session_maker):
    async with session_maker() as db:
        await ensure_user(db, SUB_USER_ID)
        reservation = await reserve_credits(SUB_USER_ID, db, amount=10, idempotency_key="spend")
        await commit_reservation(reservation.id, db)

    later = datetime.now(timezone.utc) + timedelta(days=31)

    async def run():
        async with session_maker() as session:
            return await grant_due(session, now=later)

    results = await asyncio.gather(run(), run())

    assert sum(len(applied) for applied in results) == 1
    async with session_maker() as db:
        assert await get_credit_balance(SUB_USER_ID, db) == 10
        assert await get_ledger_total(SUB_USER_ID, db) == 10


@pytest.mark.asyncio
async def test_unknown_plan_is_rejected(db):
    await ensure_user(db, SUB_USER_ID)

    with pytest.raises(ValidationError):
        await upsert_subscription(db, SUB_USER_ID, "platinum")

    subscription = await get_subscription(db, SUB_USER_ID)
    assert subscription.plan == "free"
