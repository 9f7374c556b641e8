import asyncio
import shutil
from pathlib import Path
from typing import Any


class LocalFileStore:
    """File operations confined to a root directory.

    Paths are resolved against ``root``; anything that resolves outside it is
    refused.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def resolve(self, relative: str) -> Path:
        candidate = (self.root / relative.lstrip("/")).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            raise ValueError(f"Path '{relative}' escapes the file store root")
        return candidate

    def _existing(self, relative: str) -> Path:
        path = self.resolve(relative)
        if not path.exists():
            raise FileNotFoundError(f"File '{relative}' does not exist")
        return path

    def _target(self, relative: str) -> Path:
        path = self.resolve(relative)
        path.parent.mkdir(parents=True, exist_ok=True)
        return path

    def _move(self, source: str, destination: str) -> dict[str, Any]:
        origin = self._existing(source)
        target = self._target(destination)
        shutil.move(str(origin), str(target))
        return {"path": str(target.relative_to(self.root))}

    def _copy(self, source: str, destination: str) -> dict[str, Any]:
        origin = self._existing(source)
        target = self._target(destination)
        if origin.is_dir():
            shutil.copytree(origin, target)
        else:
            shutil.copy2(origin, target)
        return {"path": str(target.relative_to(self.root))}

    def _delete(self, source: str) -> dict[str, Any]:
        origin = self._existing(source)
        if origin.is_dir():
            shutil.rmtree(origin)
        else:
            origin.unlink()
        return {"deleted": True}

    async def move(self, source: str, destination: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._move, source, destination)

    async def copy(self, source: str, destination: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._copy, source, destination)

    async def delete(self, source: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._delete, source)

    async def rename(self, source: str, destination: str) -> dict[str, Any]:
        # A rename keeps the file in its current directory.
        origin = self.resolve(source)
        if "/" in destination.strip("/"):
            raise ValueError("Rename destination must be a bare file name")
        sibling = str((origin.parent / destination.strip("/")).relative_to(self.root))
        return await asyncio.to_thread(self._move, source, sibling)
