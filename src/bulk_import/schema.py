from __future__ import annotations

import mimetypes
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator

from bulk_import.errors import InvalidTransitionError

UNMATCHED_KEY = "UNMATCHED"
UNMATCHED_NAME = "Unmatched Files"


class ConversionStatus(str, Enum):
    """Lifecycle of one raw file inside a session."""

    QUEUED = "queued"
    UPLOADING = "uploading"
    CONVERTING = "converting"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({ConversionStatus.DONE, ConversionStatus.FAILED})

ALLOWED_TRANSITIONS: dict[ConversionStatus, frozenset[ConversionStatus]] = {
    ConversionStatus.QUEUED: frozenset({ConversionStatus.UPLOADING}),
    ConversionStatus.UPLOADING: frozenset(
        {ConversionStatus.CONVERTING, ConversionStatus.DONE, ConversionStatus.FAILED}
    ),
    ConversionStatus.CONVERTING: frozenset(
        {ConversionStatus.DONE, ConversionStatus.FAILED}
    ),
    ConversionStatus.FAILED: frozenset({ConversionStatus.QUEUED}),
    ConversionStatus.DONE: frozenset(),
}


class Subtype(str, Enum):
    """Which view of the product a photo shows."""

    FRONT = "front"
    BACK = "back"
    SIDE = "side"
    DETAIL = "detail"
    UNASSIGNED = "unassigned"


class PipelineStage(str, Enum):
    CONVERTING = "converting"
    GROUPING = "grouping"
    COMMITTING = "committing"
    CLOSED = "closed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class RawItem:
    """One submitted file. ``data`` is either the bytes or a path to read them from."""

    original_filename: str
    data: bytes | Path
    id: str = field(default_factory=_new_id)

    @classmethod
    def from_path(cls, path: Path | str) -> RawItem:
        file_path = Path(path)
        return cls(original_filename=file_path.name, data=file_path)

    def read_bytes(self) -> bytes:
        if isinstance(self.data, Path):
            return self.data.read_bytes()
        return self.data

    @property
    def content_type(self) -> str:
        suffix = Path(self.original_filename).suffix.lower()
        if suffix in {".tif", ".tiff"}:
            return "image/tiff"
        guessed, _ = mimetypes.guess_type(self.original_filename)
        return guessed or "application/octet-stream"


@dataclass(frozen=True)
class Classification:
    """What the filename says about a file."""

    subtype: Subtype = Subtype.UNASSIGNED
    group_key: str | None = None
    descriptor: str | None = None
    sequence: str | None = None

    @property
    def bucket_key(self) -> str:
        return self.group_key or UNMATCHED_KEY


@dataclass
class ConversionState:
    """Mutable per-item progress owned by whichever worker holds the item."""

    status: ConversionStatus = ConversionStatus.QUEUED
    output_url: str | None = None
    error_message: str | None = None
    upload_progress: int = 0
    staging_path: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def transition(self, new_status: ConversionStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Cannot move item from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    def mark_uploading(self) -> None:
        self.transition(ConversionStatus.UPLOADING)
        self.upload_progress = 0
        self.error_message = None

    def mark_converting(self) -> None:
        self.transition(ConversionStatus.CONVERTING)

    def mark_done(self, output_url: str, staging_path: str | None = None) -> None:
        self.transition(ConversionStatus.DONE)
        self.output_url = output_url
        self.staging_path = staging_path
        self.upload_progress = 100

    def mark_failed(self, message: str) -> None:
        self.transition(ConversionStatus.FAILED)
        self.error_message = message

    def reset_for_retry(self) -> None:
        self.transition(ConversionStatus.QUEUED)
        self.error_message = None
        self.upload_progress = 0
        self.staging_path = None

    def set_progress(self, percent: float) -> bool:
        """Record upload progress; returns True when the value moved forward."""
        clamped = max(0, min(100, int(percent)))
        if clamped <= self.upload_progress:
            return False
        self.upload_progress = clamped
        return True

    def snapshot(self) -> ConversionState:
        return replace(self)


class Group(BaseModel):
    """A persisted parent record, e.g. one look made of several photos."""

    id: str = Field(default_factory=_new_id)
    key: str | None = None
    name: str
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("key", mode="before")
    @classmethod
    def _normalize_key(cls, value: Any) -> str | None:
        # Legacy records were written before the key column existed.
        if value is None:
            return None
        text = str(value).strip().upper()
        return text or None


class Item(BaseModel):
    """A persisted child record for one converted file."""

    id: str = Field(default_factory=_new_id)
    group_id: str
    subtype: Subtype = Subtype.UNASSIGNED
    url: str = Field(min_length=1)
    original_filename: str = ""
    created_at: datetime = Field(default_factory=_utcnow)

    @field_validator("subtype", mode="before")
    @classmethod
    def _coerce_subtype(cls, value: Any) -> Any:
        if value is None or value == "":
            return Subtype.UNASSIGNED
        if isinstance(value, str):
            try:
                return Subtype(value.lower())
            except ValueError:
                return Subtype.UNASSIGNED
        return value


class CommittedItem(BaseModel):
    url: str
    subtype: Subtype
    original_filename: str


class CommittedGroup(BaseModel):
    """One group written by the final commit, as reported back to the caller."""

    group_id: str
    group_name: str
    items: list[CommittedItem] = Field(default_factory=list)
