"""
Local file store.

Layout under settings.storage_root:

    <root>/<area>/<yyyy>/<mm>/<uuid>_<safe file name>

The path is built server-side; client-supplied names are reduced to their
base name first, so nothing can escape the root. All blocking filesystem
calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._\- ]")


class StorageArea(str, Enum):
    UPLOADS    = "uploads"      # files accepted for import
    BULK_TESTS = "bulk-tests"   # temporary files of a parsing test batch


@dataclass(frozen=True)
class StoredFile:
    path:       str       # absolute path
    file_name:  str       # original (sanitised) name
    size_bytes: int
    sha256:     str


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def safe_file_name(name: str) -> str:
    base = os.path.basename(name.replace("\\", "/")) or "file"
    return _UNSAFE_RE.sub("_", base).strip(". ") or "file"


class FileStore:

    def __init__(self, root: Optional[str | os.PathLike] = None) -> None:
        if root is None:
            from docpipe.core.config import settings
            root = settings.storage_root
        self.root = Path(root).resolve()

    def _target(self, area: StorageArea, file_name: str) -> Path:
        now = datetime.now(timezone.utc)
        return self.root / area.value / f"{now:%Y}" / f"{now:%m}" / f"{uuid.uuid4().hex}_{file_name}"

    def _inside_root(self, path: str | os.PathLike) -> Path:
        resolved = Path(path).resolve()
        if resolved != self.root and self.root not in resolved.parents:
            raise ValueError(f"Path outside storage root: {path}")
        return resolved

    async def save(self, data: bytes, file_name: str, area: StorageArea = StorageArea.UPLOADS) -> StoredFile:
        name = safe_file_name(file_name)
        target = self._target(area, name)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.info("File stored | area=%s path=%s bytes=%d", area.value, target, len(data))
        return StoredFile(path=str(target), file_name=name, size_bytes=len(data), sha256=sha256_hex(data))

    async def read(self, path: str | os.PathLike) -> bytes:
        return await asyncio.to_thread(self._inside_root(path).read_bytes)

    async def delete(self, path: str | os.PathLike) -> bool:
        """Remove a stored file. Returns False when it was already gone."""
        target = self._inside_root(path)
        try:
            await asyncio.to_thread(target.unlink)
        except FileNotFoundError:
            logger.info("File already absent | path=%s", target)
            return False
        logger.info("File deleted | path=%s", target)
        return True

    async def exists(self, path: str | os.PathLike) -> bool:
        return await asyncio.to_thread(self._inside_root(path).exists)
