"""Filesystem blob sink for attachment payloads."""

from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger


class BlobStore:
    """Stores blobs under a single root directory.

    Locators are POSIX-style paths relative to the root; anything that
    resolves outside the root is rejected.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root).expanduser().resolve()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, locator: str) -> Path:
        """Resolve a locator to an absolute path inside the root."""
        resolved = (self._root / locator).resolve()
        try:
            resolved.relative_to(self._root)
        except ValueError:
            raise ValueError(
                f"Locator '{locator}' resolves to '{resolved}' "
                f"which is outside the blob root '{self._root}'."
            ) from None
        return resolved

    async def write(self, locator: str, data: bytes) -> Path:
        """Write ``data`` at ``locator``; returns the absolute path."""
        path = self.path_for(locator)
        await asyncio.to_thread(self._write_sync, path, data)
        logger.debug("Blob written: {} ({} bytes)", path, len(data))
        return path

    async def open(self, locator: str) -> bytes:
        path = self.path_for(locator)
        return await asyncio.to_thread(path.read_bytes)

    def exists(self, locator: str) -> bool:
        return self.path_for(locator).is_file()

    @staticmethod
    def _write_sync(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".part")
        tmp.write_bytes(data)
        tmp.replace(path)
