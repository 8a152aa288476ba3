from __future__ import annotations

import asyncio
import base64
import shutil
from pathlib import Path
from typing import Protocol


class Storage(Protocol):
    async def save(self, data: bytes | str, logical_path: str) -> str: ...

    async def exists(self, url: str) -> bool: ...

    async def delete(self, logical_prefix: str) -> None: ...


class StoragePathError(ValueError):
    pass


def decode_payload(data: bytes | str) -> bytes:
    """Accept raw bytes, a base64 string or a ``data:`` URL."""
    if isinstance(data, bytes):
        return data
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    return base64.b64decode(data)


def _write_file(path: Path, payload: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(path.name + ".part")
    tmp_path.write_bytes(payload)
    tmp_path.replace(path)


def _delete_tree(path: Path) -> None:
    if path.is_dir():
        shutil.rmtree(path)
    elif path.exists():
        path.unlink()


class LocalStorage:
    """Files on local disk, published under ``url_prefix`` by the files route."""

    def __init__(self, root: Path, url_prefix: str = "/files") -> None:
        self.root = Path(root)
        self.url_prefix = url_prefix.rstrip("/")

    def path_for(self, logical_path: str) -> Path:
        root = self.root.resolve()
        path = (root / logical_path.lstrip("/")).resolve()
        if path != root and root not in path.parents:
            raise StoragePathError(f"Path escapes storage root: {logical_path}")
        return path

    def url_for(self, logical_path: str) -> str:
        return f"{self.url_prefix}/{logical_path.lstrip('/')}"

    def _logical_path_from_url(self, url: str) -> str | None:
        prefix = self.url_prefix + "/"
        if not url.startswith(prefix):
            return None
        return url[len(prefix) :]

    async def save(self, data: bytes | str, logical_path: str) -> str:
        payload = decode_payload(data)
        path = self.path_for(logical_path)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _write_file, path, payload)
        return self.url_for(logical_path)

    async def exists(self, url: str) -> bool:
        logical_path = self._logical_path_from_url(url)
        if logical_path is None:
            return False
        try:
            return self.path_for(logical_path).is_file()
        except StoragePathError:
            return False

    async def delete(self, logical_prefix: str) -> None:
        path = self.path_for(logical_prefix)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, _delete_tree, path)
