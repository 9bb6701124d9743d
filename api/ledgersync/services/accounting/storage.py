import asyncio
from pathlib import Path

from ledgersync.core.config import settings


class LocalStorage:
    """Attachment bytes under the upload directory."""

    def __init__(self, root: str | Path | None = None):
        self.root = Path(root or settings.upload_dir).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / path.lstrip("/")).resolve()
        # Reject paths escaping the upload dir (../../etc/passwd)
        if not target.is_relative_to(self.root):
            raise FileNotFoundError(f"Path outside storage root: {path}")
        return target

    async def download(self, path: str) -> bytes:
        return await asyncio.to_thread(self._resolve(path).read_bytes)
