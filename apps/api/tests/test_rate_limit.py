from unittest.mock import patch

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from routers.rate_limit import rate_limit


def _limited_app() -> FastAPI:
    limited_app = FastAPI()

    @limited_app.get("/ping")
    async def ping_endpoint(_rate_limit: None = Depends(rate_limit("ping", limit=2, window_seconds=60))):
        return {"ok": True}

    return limited_app


@pytest.mark.asyncio
async def test_local_fallback_enforces_quota_per_caller():
    with patch("routers.rate_limit.redis.from_url", side_effect=RuntimeError("redis offline")):
        async with AsyncClient(transport=ASGITransport(app=_limited_app()), base_url="http://test") as client:
            alice = {"Authorization": "Bearer alice-token"}
            bob = {"Authorization": "Bearer bob-token"}

            assert (await client.get("/ping", headers=alice)).status_code == 200
            assert (await client.get("/ping", headers=alice)).status_code == 200
            limited = await client.get("/ping", headers=alice)
            assert limited.status_code == 429
            assert 1 <= int(limited.headers["retry-after"]) <= 60

            assert (await client.get("/ping", headers=bob)).status_code == 200
