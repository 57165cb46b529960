"""Conversion gateway: one raw file in, one stored output URL out.

TIFFs are staged in the blob store and handed to the conversion service;
every other supported image is uploaded straight to its final location.
Transfers run on a helper thread so the calling worker can watch them: if the
upload percentage stops increasing for ``stall_timeout`` seconds the transfer
is told to abort and the item fails with ``TransferStalledError``. A hard
``max_duration`` ceiling applies to the whole operation.

Nothing here retries; the controller owns retry.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from bulk_import.blob_store import BlobStore
from bulk_import.classifier import needs_conversion
from bulk_import.config_utils import DEFAULT_MAX_DURATION_S, DEFAULT_STALL_TIMEOUT_S
from bulk_import.conversion_service import ConversionService, output_path_for
from bulk_import.errors import (
    ConversionError,
    ConversionTimeoutError,
    MissingOutputError,
    TransferAbortedError,
    TransferError,
    TransferStalledError,
)
from bulk_import.schema import ConversionStatus, RawItem

T = TypeVar("T")

PhaseCallback = Callable[[ConversionStatus], None]
PercentCallback = Callable[[float], None]

MAX_POLL_INTERVAL_S = 0.5

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversionResult:
    output_url: str
    staging_path: str | None = None


class _ProgressTracker:
    """Remembers the highest percentage seen and when it last increased."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.percent = 0.0
        self.last_progress_at = time.monotonic()

    def update(self, sent: int, total: int) -> float | None:
        percent = 100.0 if total <= 0 else min(100.0, sent * 100.0 / total)
        with self._lock:
            if percent <= self.percent:
                return None
            self.percent = percent
            self.last_progress_at = time.monotonic()
            return percent

    def idle_seconds(self) -> float:
        with self._lock:
            return time.monotonic() - self.last_progress_at


class ConversionGateway:
    def __init__(
        self,
        blob_store: BlobStore,
        service: ConversionService,
        *,
        prefix: str = "bulk-import",
        stall_timeout: float = DEFAULT_STALL_TIMEOUT_S,
        max_duration: float = DEFAULT_MAX_DURATION_S,
        context: Mapping[str, Any] | None = None,
    ):
        if stall_timeout <= 0 or max_duration <= 0:
            raise ValueError("stall_timeout and max_duration must be positive")
        self.blob_store = blob_store
        self.service = service
        self.prefix = prefix.strip("/")
        self.stall_timeout = stall_timeout
        self.max_duration = max_duration
        self.context = dict(context or {})
        self.poll_interval = min(MAX_POLL_INTERVAL_S, stall_timeout / 4)

    def object_path(self, folder: str, filename: str) -> str:
        timestamp = int(time.time() * 1000)
        token = uuid.uuid4().hex[:6]
        return f"{self.prefix}/{folder}/{timestamp}-{token}-{filename}"

    def convert(
        self,
        raw_item: RawItem,
        *,
        on_progress: PercentCallback | None = None,
        on_phase: PhaseCallback | None = None,
    ) -> ConversionResult:
        """Convert or upload ``raw_item``; raises a ``ConversionError`` on failure."""
        deadline = time.monotonic() + self.max_duration
        filename = raw_item.original_filename

        try:
            data = raw_item.read_bytes()
        except OSError as exc:
            raise TransferError(f"Could not read {filename}: {exc}") from exc

        if not needs_conversion(filename):
            path = self.object_path("uploads", filename)
            self._transfer(path, data, raw_item.content_type, on_progress, deadline)
            return ConversionResult(output_url=self.blob_store.public_url(path))

        staging_path = self.object_path("staging", filename)
        self._transfer(staging_path, data, raw_item.content_type, on_progress, deadline)

        if on_phase is not None:
            on_phase(ConversionStatus.CONVERTING)

        context = {
            **self.context,
            "sourceUrl": self.blob_store.public_url(staging_path),
            "targetPath": output_path_for(staging_path),
        }
        output_url = self._run_guarded(
            lambda: self.service.convert(staging_path, filename, context),
            deadline=deadline,
            label=f"Conversion of {filename}",
        )
        if not output_url:
            raise MissingOutputError(f"No output URL returned for {filename}")
        return ConversionResult(output_url=output_url, staging_path=staging_path)

    def _transfer(
        self,
        path: str,
        data: bytes,
        content_type: str,
        on_progress: PercentCallback | None,
        deadline: float,
    ) -> None:
        tracker = _ProgressTracker()
        abort = threading.Event()

        def _report(sent: int, total: int) -> None:
            if abort.is_set():
                raise TransferAbortedError(f"Upload to {path} aborted")
            percent = tracker.update(sent, total)
            if percent is not None and on_progress is not None:
                on_progress(percent)

        self._run_guarded(
            lambda: self.blob_store.upload(path, data, content_type, progress=_report),
            deadline=deadline,
            label=f"Upload of {path}",
            tracker=tracker,
            abort=abort,
        )

    def _run_guarded(
        self,
        func: Callable[[], T],
        *,
        deadline: float,
        label: str,
        tracker: _ProgressTracker | None = None,
        abort: threading.Event | None = None,
    ) -> T:
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="transfer"
        )
        future = executor.submit(func)
        try:
            while True:
                remaining = deadline - time.monotonic()
                done, _ = concurrent.futures.wait(
                    [future], timeout=max(0.0, min(self.poll_interval, remaining))
                )
                if done:
                    return self._unwrap(future, label)

                if time.monotonic() >= deadline:
                    if abort is not None:
                        abort.set()
                    raise ConversionTimeoutError(
                        f"{label} exceeded {self.max_duration:.0f}s"
                    )

                if tracker is not None and tracker.percent < 100:
                    idle = tracker.idle_seconds()
                    if idle >= self.stall_timeout:
                        if abort is not None:
                            abort.set()
                        logger.warning(
                            "%s stalled at %.0f%% after %.1fs without progress",
                            label,
                            tracker.percent,
                            idle,
                        )
                        raise TransferStalledError(
                            f"{label} stalled: no progress for {idle:.0f}s"
                        )
        finally:
            executor.shutdown(wait=False)

    @staticmethod
    def _unwrap(future: concurrent.futures.Future, label: str) -> Any:
        try:
            return future.result()
        except ConversionError:
            raise
        except Exception as exc:
            raise TransferError(f"{label} failed: {exc}") from exc
