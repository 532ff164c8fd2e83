"""
Object storage access.

Uploaded study material lives in object storage; the pipeline only ever
needs ``download(path) -> bytes`` and ``upload(path, data)``. Two backends:

- ``LocalObjectStorage``: files under ``STORAGE_ROOT`` (development, tests)
- ``HttpObjectStorage``: a bucket behind a plain HTTP API (``STORAGE_BASE_URL``)
"""

import asyncio
from pathlib import Path
from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from studyflow.core.config import settings
from studyflow.core.errors import ConfigurationError, PermanentExternalError
from studyflow.core.logging import get_logger

logger = get_logger(__name__)


class ObjectStorage(Protocol):
    async def download(self, path: str) -> bytes:
        ...

    async def upload(self, path: str, data: bytes) -> None:
        ...


def normalize_storage_path(path: str) -> str:
    """'/units/1/notes.pdf?token=x ' -> 'units/1/notes.pdf'"""
    cleaned = path.strip().split("?", 1)[0]
    return cleaned.lstrip("/")


class LocalObjectStorage:
    """Filesystem-backed storage rooted at one directory."""

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or settings.STORAGE_ROOT).resolve()

    def _resolve(self, path: str) -> Path:
        target = (self.root / normalize_storage_path(path)).resolve()
        if target != self.root and self.root not in target.parents:
            raise PermanentExternalError(f"Path escapes storage root: {path}", provider_name="storage")
        return target

    async def download(self, path: str) -> bytes:
        target = self._resolve(path)
        if not target.is_file():
            raise PermanentExternalError(f"Object not found: {path}", provider_name="storage")
        return await asyncio.to_thread(target.read_bytes)

    async def upload(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(target.write_bytes, data)
        logger.debug("object_uploaded", path=path, size=len(data))


class HttpObjectStorage:
    """
    Storage behind an HTTP bucket API.

    GET/PUT ``{base_url}/{path}`` with an optional bearer token. Status
    errors propagate as ``httpx.HTTPStatusError`` and are classified by the
    caller (429/5xx transient, other 4xx permanent).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.STORAGE_BASE_URL or "").rstrip("/")
        if not self.base_url:
            raise ConfigurationError("STORAGE_BASE_URL is required for the http storage backend")
        self.api_key = api_key or settings.STORAGE_API_KEY
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        return httpx.AsyncClient(headers=headers, timeout=self.timeout, transport=self._transport)

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{quote(normalize_storage_path(path))}"

    async def download(self, path: str) -> bytes:
        async with self._client() as client:
            response = await client.get(self._url(path))
            response.raise_for_status()
            return response.content

    async def upload(self, path: str, data: bytes) -> None:
        async with self._client() as client:
            response = await client.put(self._url(path), content=data)
            response.raise_for_status()
        logger.debug("object_uploaded", path=path, size=len(data))


def build_storage() -> ObjectStorage:
    """Storage backend selected by ``STORAGE_BACKEND``."""
    if settings.STORAGE_BACKEND == "http":
        return HttpObjectStorage()
    return LocalObjectStorage()
