"""Conversion service adapters: turn one staged raw file into a PNG URL."""

from __future__ import annotations

import io
import logging
from collections.abc import Mapping
from pathlib import PurePosixPath
from typing import Any, Protocol

import httpx
from PIL import Image, UnidentifiedImageError

from bulk_import.blob_store import LocalBlobStore
from bulk_import.errors import (
    ConversionServiceError,
    ConversionTimeoutError,
    MissingOutputError,
    TransferError,
)

OUTPUT_URL_FIELDS = ("outputUrl", "pngUrl", "convertedUrl")

logger = logging.getLogger(__name__)


class ConversionService(Protocol):
    def convert(
        self, staged_ref: str, original_filename: str, context: Mapping[str, Any]
    ) -> str: ...


def output_path_for(staged_ref: str, folder: str = "converted") -> str:
    """``a/staging/123-x.tif`` -> ``a/converted/123-x.png``."""
    staged = PurePosixPath(staged_ref)
    parent = staged.parent
    if parent.name == "staging":
        parent = parent.parent / folder
    return str(parent / f"{staged.stem}.png")


def _extract_output_url(payload: Any) -> str:
    if isinstance(payload, Mapping):
        for key in OUTPUT_URL_FIELDS:
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    raise MissingOutputError("Conversion service returned no output URL")


class HttpConversionService:
    """Calls a remote HTTP function that converts the staged object."""

    def __init__(
        self,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        timeout: float = 120.0,
        client: httpx.Client | None = None,
    ):
        self.url = url
        self._client = client or httpx.Client(headers=headers or {}, timeout=timeout)

    def convert(
        self, staged_ref: str, original_filename: str, context: Mapping[str, Any]
    ) -> str:
        body = {
            "stagedPath": staged_ref,
            "originalFilename": original_filename,
            **dict(context),
        }
        try:
            response = self._client.post(self.url, json=body)
        except httpx.TimeoutException as exc:
            raise ConversionTimeoutError(
                f"Conversion of {original_filename} timed out"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransferError(
                f"Conversion request for {original_filename} failed: {exc}"
            ) from exc

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if response.is_error:
            detail = ""
            if isinstance(payload, Mapping) and payload.get("error"):
                detail = f": {payload['error']}"
            raise ConversionServiceError(
                f"Conversion service returned HTTP {response.status_code}{detail}"
            )
        if payload is None:
            raise ConversionServiceError("Conversion service returned invalid JSON")

        return _extract_output_url(payload)

    def close(self) -> None:
        self._client.close()


class PillowConversionService:
    """Converts staged TIFFs to PNG in-process against a local blob store."""

    def __init__(self, blob_store: LocalBlobStore, *, output_folder: str = "converted"):
        self.blob_store = blob_store
        self.output_folder = output_folder

    def convert(
        self, staged_ref: str, original_filename: str, context: Mapping[str, Any]
    ) -> str:
        output_path = context.get("targetPath") or output_path_for(
            staged_ref, self.output_folder
        )
        try:
            raw = self.blob_store.read(staged_ref)
        except OSError as exc:
            raise ConversionServiceError(
                f"Staged object {staged_ref} is not readable: {exc}"
            ) from exc

        try:
            with Image.open(io.BytesIO(raw)) as image:
                if image.mode not in {"RGB", "RGBA", "L", "LA", "P"}:
                    image = image.convert("RGBA")
                buffer = io.BytesIO()
                image.save(buffer, format="PNG")
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            raise ConversionServiceError(
                f"Could not convert {original_filename}: {exc}"
            ) from exc

        self.blob_store.upload(output_path, buffer.getvalue(), "image/png")
        self.blob_store.delete(staged_ref)
        logger.debug("Converted %s to %s", original_filename, output_path)
        return self.blob_store.public_url(output_path)
