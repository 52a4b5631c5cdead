"""
Local object storage for generated binary assets.

Layout: {root}/{YYYY-MM-DD}/{idea_id}/{uuid}.{ext}
Public URL: /storage/assets/{YYYY-MM-DD}/{idea_id}/{uuid}.{ext}

Public URLs come back from the database and from clients, so every URL ->
path conversion is checked against traversal before touching the disk.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import unquote

from app.settings import Settings, get_settings

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/storage/assets"
MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/svg+xml": "svg",
    "video/mp4": "mp4",
}


def extension_for_mime(mime: str | None) -> str:
    normalized = (mime or "").split(";")[0].strip().lower()
    return MIME_EXTENSIONS.get(normalized, "bin")


class LocalObjectStorage:
    def __init__(self, root: str | Path | None = None, settings: Settings | None = None):
        settings = settings or get_settings()
        self.root = Path(root or settings.storage_root).resolve()

    async def save(self, data: bytes, mime: str, idea_id: str) -> str:
        day = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        filename = f"{uuid.uuid4()}.{extension_for_mime(mime)}"
        target = self.root / day / idea_id / filename

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info(f"[storage] Saved {len(data)} bytes to {target}")
        return f"{PUBLIC_PREFIX}/{day}/{idea_id}/{filename}"

    def resolve_public_url(self, public_url: str) -> Path | None:
        """Map a public URL to a file path inside root, or None if it is not one of ours."""
        url = (public_url or "").split("?", 1)[0].split("#", 1)[0]
        if not url.startswith(f"{PUBLIC_PREFIX}/"):
            return None
        if "\x00" in url:
            return None
        relative = unquote(url[len(PUBLIC_PREFIX) + 1:]).replace("\\", "/")
        if "\x00" in relative:
            return None
        segments = relative.split("/")
        if not relative or any(segment in ("", ".", "..") for segment in segments):
            return None

        candidate = (self.root / Path(*segments)).resolve()
        if candidate == self.root or not candidate.is_relative_to(self.root):
            return None
        return candidate

    async def remove_by_public_url(self, public_url: str) -> bool:
        path = self.resolve_public_url(public_url)
        if path is None:
            logger.warning(f"[storage] Refusing to remove {public_url!r}: not a storage URL")
            return False
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning(f"[storage] Failed to remove {path}: {exc}")
            return False
        logger.info(f"[storage] Removed {path}")
        return True
