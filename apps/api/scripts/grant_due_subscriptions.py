"""Apply every subscription grant that has come due.

Run from cron or a scheduler; safe to run repeatedly or concurrently.
"""

import asyncio
import os
import sys

# Add parent dir to path to find config/database
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker
from services.subscriptions import grant_due


async def grant_due_subscriptions_async() -> int:
    print("💳 Applying due subscription grants...")
    async with async_session_maker() as db:
        applied = await grant_due(db)
    for grant in applied:
        print(
            f"  ✅ {grant['user_id']} ({grant['plan']}) period {grant['period_index']}: "
            f"+{grant['credits_granted']} -> {grant['balance_after']}"
        )
    print(f"🏁 {len(applied)} grant(s) applied.")
    return len(applied)


if __name__ == "__main__":
    asyncio.run(grant_due_subscriptions_async())
