from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse

from .dependencies import get_storage
from .services.object_storage import PUBLIC_PREFIX, LocalObjectStorage

router = APIRouter(prefix=PUBLIC_PREFIX, tags=["files"])


@router.get("/{file_path:path}")
async def get_asset_file(file_path: str, storage: LocalObjectStorage = Depends(get_storage)):
    path = storage.resolve_public_url(f"{PUBLIC_PREFIX}/{file_path}")
    if path is None:
        raise HTTPException(status_code=400, detail="Invalid file path")
    if not path.exists() or not path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    return FileResponse(path)
