from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Protocol

import httpx

from decostudio.utils.logging import get_logger


logger = get_logger('storage')

CONTENT_TYPE_EXTENSIONS = {
    'image/jpeg': '.jpg',
    'image/png': '.png',
    'image/webp': '.webp',
}


class BlobStoreError(Exception):
    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class BlobStore(Protocol):
    async def put(self, data: bytes, content_type: str, key: str) -> str:
        """Store bytes under ``key``; the returned public URL is durable."""
        ...

    async def put_from_url(self, url: str, key: str, content_type: str = 'image/jpeg') -> str:
        ...


def extension_for(content_type: str) -> str:
    return CONTENT_TYPE_EXTENSIONS.get((content_type or '').lower(), '.jpg')


class LocalBlobStore:
    """Files on a local volume served under a public base URL.

    Keys are deterministic per generation, so a repeated put of the same key
    overwrites the same file and yields the same URL.
    """

    def __init__(
        self,
        root: str,
        public_base_url: str,
        http_client: httpx.AsyncClient | None = None,
        download_timeout: float = 60.0,
    ) -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip('/')
        self._client = http_client or httpx.AsyncClient(timeout=download_timeout, follow_redirects=True)

    async def close(self) -> None:
        await self._client.aclose()

    def _path_for(self, key: str) -> Path:
        cleaned = key.strip().lstrip('/')
        if not cleaned or '..' in Path(cleaned).parts:
            raise BlobStoreError(f'invalid blob key: {key!r}')
        return self.root / cleaned

    def public_url(self, key: str) -> str:
        return f'{self.public_base_url}/{key.strip().lstrip("/")}'

    async def put(self, data: bytes, content_type: str, key: str) -> str:
        if not data:
            raise BlobStoreError('empty blob')
        path = self._path_for(key)
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as exc:
            raise BlobStoreError(f'blob write failed: {exc}') from exc
        logger.info('blob_stored', key=key, size=len(data), content_type=content_type)
        return self.public_url(key)

    async def put_from_url(self, url: str, key: str, content_type: str = 'image/jpeg') -> str:
        try:
            resp = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise BlobStoreError(f'download failed: {exc}') from exc
        if resp.status_code >= 400:
            raise BlobStoreError(f'download failed with status {resp.status_code}', resp.status_code)
        return await self.put(resp.content, resp.headers.get('content-type') or content_type, key)

    @staticmethod
    def _write(path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(path.suffix + '.tmp')
        tmp_path.write_bytes(data)
        os.replace(tmp_path, path)
