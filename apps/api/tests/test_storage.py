import asyncio
import os
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

from services.errors import NotFoundError, ValidationError
from services.storage import ArtifactStorage


def _storage(tmp_path, ttl: int = 3600) -> ArtifactStorage:
    return ArtifactStorage(
        root=str(tmp_path / "artifacts"),
        public_base_url="https://api.example.test/",
        signing_secret="storage-test-secret-with-enough-length",
        url_ttl_seconds=ttl,
    )


def _token(url: str) -> str:
    return parse_qs(urlparse(url).query)["token"][0]


@pytest.mark.asyncio
async def test_identical_bytes_share_one_locator(tmp_path):
    storage = _storage(tmp_path)

    first, second = await asyncio.gather(
        storage.store(b"\x89PNG-same-bytes", "image/png"),
        storage.store(b"\x89PNG-same-bytes", "image/png"),
    )

    assert first == second
    assert first.key.startswith(first.sha256[:2] + "/")
    assert first.key.endswith(".png")
    files = [path for path in (tmp_path / "artifacts").rglob("*") if path.is_file()]
    assert len(files) == 1
    assert files[0].read_bytes() == b"\x89PNG-same-bytes"


@pytest.mark.asyncio
async def test_store_rejects_unsupported_or_empty_content(tmp_path):
    storage = _storage(tmp_path)

    with pytest.raises(ValidationError):
        await storage.store(b"<svg/>", "image/svg+xml")
    with pytest.raises(ValidationError):
        await storage.store(b"", "image/png")


@pytest.mark.asyncio
async def test_signed_url_resolves_only_its_own_key(tmp_path):
    storage = _storage(tmp_path)
    jpeg = await storage.store(b"jpeg-bytes", "image/jpeg; charset=binary")
    png = await storage.store(b"png-bytes", "image/png")

    url = storage.retrieve(jpeg.key)
    assert url.startswith(f"https://api.example.test/media/artifacts/{jpeg.key}?token=")

    token = _token(url)
    storage.verify_token(jpeg.key, token)
    assert storage.open_path(jpeg.key).read_bytes() == b"jpeg-bytes"
    with pytest.raises(ValueError):
        storage.verify_token(png.key, token)


@pytest.mark.asyncio
async def test_signed_url_expires(tmp_path):
    storage = _storage(tmp_path, ttl=60)
    locator = await storage.store(b"webp-bytes", "image/webp")

    stale_url = storage.retrieve(locator.key, now=datetime.now(timezone.utc) - timedelta(minutes=5))

    with pytest.raises(ValueError):
        storage.verify_token(locator.key, _token(stale_url))


@pytest.mark.asyncio
async def test_stale_delete_and_path_traversal(tmp_path):
    storage = _storage(tmp_path)
    locator = await storage.store(b"bye", "image/png")
    written_at = storage.open_path(locator.key).stat().st_mtime

    assert await storage.delete_if_stale(locator.key, written_at) is False
    assert storage.exists(locator.key)

    assert await storage.delete_if_stale(locator.key, written_at + 60) is True
    assert not storage.exists(locator.key)
    assert await storage.delete_if_stale(locator.key, written_at + 60) is False
    with pytest.raises(NotFoundError):
        storage.open_path(locator.key)
    with pytest.raises(ValidationError):
        storage.open_path("../../etc/passwd")


@pytest.mark.asyncio
async def test_storing_existing_bytes_refreshes_mtime(tmp_path):
    storage = _storage(tmp_path)
    locator = await storage.store(b"shared", "image/png")
    path = storage.open_path(locator.key)
    os.utime(path, (1_000_000, 1_000_000))

    assert [key for key, _ in storage.iter_artifacts(2_000_000)] == [locator.key]

    await storage.store(b"shared", "image/png")

    assert path.stat().st_mtime > 2_000_000
    assert list(storage.iter_artifacts(2_000_000)) == []
