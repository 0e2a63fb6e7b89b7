"""
File-backed artifact cache

Content-addressed by artifact path. Handed to the engine at start; the
workflows themselves never read or write it.
"""

import asyncio
from pathlib import Path
from typing import Optional, Union

from loguru import logger


class FileArtifactStore:
    """Stores engine artifacts (circuits, zkeys, wasm) under a root directory"""

    def __init__(self, root: Union[str, Path] = "artifacts"):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Artifact key escapes store root: {key!r}")
        return path

    async def exists(self, key: str) -> bool:
        path = self._path(key)
        return await asyncio.to_thread(path.is_file)

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError:
            return None

    async def put(self, key: str, data: bytes) -> None:
        path = self._path(key)

        def _write():
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        await asyncio.to_thread(_write)
        logger.debug(f"Stored artifact {key} ({len(data)} bytes)")

    async def remove(self, key: str) -> None:
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            pass
