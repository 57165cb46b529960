"""Blob storage adapters for staged and final image bytes."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import httpx

from bulk_import.errors import TransferError

ProgressCallback = Callable[[int, int], None]
DEFAULT_CHUNK_SIZE = 256 * 1024

logger = logging.getLogger(__name__)


class BlobStore(Protocol):
    def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        progress: ProgressCallback | None = None,
    ) -> None: ...

    def public_url(self, path: str) -> str: ...


def _iter_chunks(
    data: bytes, chunk_size: int, progress: ProgressCallback | None
) -> Iterator[bytes]:
    total = len(data)
    if progress is not None:
        progress(0, total)
    if total == 0:
        return
    sent = 0
    while sent < total:
        chunk = data[sent : sent + chunk_size]
        yield chunk
        sent += len(chunk)
        if progress is not None:
            progress(sent, total)


class LocalBlobStore:
    """Stores objects under a directory and serves them from ``base_url``."""

    def __init__(
        self,
        root: Path | str,
        base_url: str,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")
        self.chunk_size = max(1, chunk_size)

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if not target.is_relative_to(self.root.resolve()):
            raise TransferError(f"Refusing to write outside blob root: {path}")
        return target

    def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        progress: ProgressCallback | None = None,
    ) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with target.open("wb") as handle:
                for chunk in _iter_chunks(data, self.chunk_size, progress):
                    handle.write(chunk)
        except OSError as exc:
            raise TransferError(f"Upload to {path} failed: {exc}") from exc
        logger.debug("Stored %d bytes at %s (%s)", len(data), target, content_type)

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{quote(path)}"

    def read(self, path: str) -> bytes:
        return self._resolve(path).read_bytes()

    def delete(self, path: str) -> None:
        self._resolve(path).unlink(missing_ok=True)

    def exists(self, path: str) -> bool:
        return self._resolve(path).exists()


class HttpBlobStore:
    """Object storage REST endpoint (``POST /object/<bucket>/<path>``)."""

    def __init__(
        self,
        base_url: str,
        bucket: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 60.0,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        client: httpx.Client | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.bucket = bucket
        self.chunk_size = max(1, chunk_size)
        self._client = client or httpx.Client(headers=headers or {}, timeout=timeout)

    def upload(
        self,
        path: str,
        data: bytes,
        content_type: str,
        progress: ProgressCallback | None = None,
    ) -> None:
        url = f"{self.base_url}/object/{self.bucket}/{quote(path)}"
        try:
            response = self._client.post(
                url,
                content=_iter_chunks(data, self.chunk_size, progress),
                headers={"Content-Type": content_type, "x-upsert": "false"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransferError(
                f"Upload to {path} rejected with HTTP {exc.response.status_code}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransferError(f"Upload to {path} failed: {exc}") from exc

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/object/public/{self.bucket}/{quote(path)}"

    def close(self) -> None:
        self._client.close()
