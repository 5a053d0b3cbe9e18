"""Image storage used by the job runner to persist provider output."""

import asyncio
from pathlib import Path
from typing import Protocol


class ImageStorage(Protocol):
    """Object storage capability consumed by the creation pipeline."""

    async def upload_image(self, data: bytes, filename: str) -> str:
        """Store image bytes and return the URL they are served from."""
        ...


class LocalImageStorage:
    """Filesystem-backed storage serving files under a static URL prefix."""

    def __init__(self, root: str | Path, url_prefix: str = "/images/created"):
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def _write(self, data: bytes, filename: str) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        (self.root / filename).write_bytes(data)

    async def upload_image(self, data: bytes, filename: str) -> str:
        if not filename or "/" in filename or "\\" in filename or filename.startswith("."):
            raise ValueError(f"Invalid image filename: {filename!r}")
        await asyncio.to_thread(self._write, data, filename)
        return f"{self.url_prefix}/{filename}"
