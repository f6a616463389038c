"""Content-addressed artifact storage with signed retrieval URLs.

Artifacts are keyed by the SHA-256 of their bytes, so storing identical
content twice yields the same locator and a single file on disk. Retried
pipeline runs therefore never duplicate an artifact.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterator, Optional, Tuple
from urllib.parse import quote

from jose import JWTError, jwt

from config import settings
from services.errors import NotFoundError, ValidationError


ARTIFACT_TOKEN_TYPE = "artifact_url"
ARTIFACT_TOKEN_ALGORITHM = "HS256"

IMAGE_EXT_BY_MIME = {
    "image/png": ".png",
    "image/jpeg": ".jpg",
    "image/webp": ".webp",
}
IMAGE_MIME_BY_EXT = {ext: mime for mime, ext in IMAGE_EXT_BY_MIME.items()}


@dataclass(frozen=True)
class Locator:
    key: str
    content_type: str
    size_bytes: int
    sha256: str


def content_type_for_key(key: str) -> str:
    return IMAGE_MIME_BY_EXT.get(Path(key).suffix.lower(), "application/octet-stream")


class ArtifactStorage:
    """Filesystem-backed artifact store."""

    def __init__(
        self,
        root: str,
        public_base_url: str,
        signing_secret: str,
        url_ttl_seconds: int = 3600,
    ):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.signing_secret = signing_secret
        self.url_ttl_seconds = max(int(url_ttl_seconds), 1)

    def _path_for(self, key: str) -> Path:
        candidate = (self.root / key).resolve()
        root = self.root.resolve()
        if root not in candidate.parents:
            raise ValidationError("Invalid artifact key")
        return candidate

    def _write(self, key: str, data: bytes) -> None:
        target = self._path_for(key)
        try:
            # Marks a shared artifact as freshly used so the orphan sweep skips it.
            os.utime(target)
            return
        except FileNotFoundError:
            pass
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=".upload-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_name, target)
        except Exception:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def store(self, data: bytes, content_type: str) -> Locator:
        mime = str(content_type or "").split(";", 1)[0].strip().lower()
        ext = IMAGE_EXT_BY_MIME.get(mime)
        if ext is None:
            raise ValidationError(f"Unsupported artifact content type: {content_type}")
        if not data:
            raise ValidationError("Artifact is empty")

        digest = hashlib.sha256(data).hexdigest()
        key = f"{digest[:2]}/{digest}{ext}"
        await asyncio.to_thread(self._write, key, data)
        return Locator(key=key, content_type=mime, size_bytes=len(data), sha256=digest)

    def retrieve(self, key: str, *, now: Optional[datetime] = None) -> str:
        """Return a time-limited URL for ``key``."""
        issued = now or datetime.now(timezone.utc)
        claims = {
            "type": ARTIFACT_TOKEN_TYPE,
            "key": key,
            "iat": int(issued.timestamp()),
            "exp": int((issued + timedelta(seconds=self.url_ttl_seconds)).timestamp()),
        }
        token = jwt.encode(claims, self.signing_secret, algorithm=ARTIFACT_TOKEN_ALGORITHM)
        return f"{self.public_base_url}/media/artifacts/{quote(key)}?token={token}"

    def verify_token(self, key: str, token: str) -> None:
        try:
            claims = jwt.decode(token, self.signing_secret, algorithms=[ARTIFACT_TOKEN_ALGORITHM])
        except JWTError as exc:
            raise ValueError("Invalid or expired artifact link.") from exc
        if claims.get("type") != ARTIFACT_TOKEN_TYPE or claims.get("key") != key:
            raise ValueError("Artifact link does not match the requested object.")

    def exists(self, key: str) -> bool:
        return self._path_for(key).is_file()

    def open_path(self, key: str) -> Path:
        path = self._path_for(key)
        if not path.is_file():
            raise NotFoundError("Artifact not found")
        return path

    def iter_artifacts(self, older_than: float) -> Iterator[Tuple[str, float]]:
        """Yield ``(key, mtime)`` for artifacts last written before ``older_than``."""
        if not self.root.is_dir():
            return
        for path in self.root.glob("*/*"):
            if not path.is_file() or path.name.startswith(".upload-"):
                continue
            try:
                mtime = path.stat().st_mtime
            except FileNotFoundError:
                continue
            if mtime < older_than:
                yield path.relative_to(self.root).as_posix(), mtime

    def _unlink_if_stale(self, key: str, older_than: float) -> bool:
        path = self._path_for(key)
        try:
            if path.stat().st_mtime >= older_than:
                return False
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    async def delete_if_stale(self, key: str, older_than: float) -> bool:
        """Remove ``key`` unless it was written again at or after ``older_than``."""
        return await asyncio.to_thread(self._unlink_if_stale, key, older_than)


def get_artifact_storage() -> ArtifactStorage:
    return ArtifactStorage(
        root=settings.ARTIFACT_STORAGE_DIR,
        public_base_url=settings.PUBLIC_BASE_URL,
        signing_secret=settings.ARTIFACT_SIGNING_SECRET or settings.JWT_SECRET,
        url_ttl_seconds=settings.ARTIFACT_URL_TTL_SECONDS,
    )
