"""Signed artifact download router."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import FileResponse

from services.storage import content_type_for_key, get_artifact_storage

router = APIRouter()


@router.get("/artifacts/{key:path}")
async def download_artifact(key: str, token: str = Query(min_length=1)):
    storage = get_artifact_storage()
    try:
        storage.verify_token(key, token)
    except ValueError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    path = storage.open_path(key)
    return FileResponse(
        str(path),
        media_type=content_type_for_key(key),
        headers={"Cache-Control": "private, max-age=300"},
    )
