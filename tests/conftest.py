from __future__ import annotations

import threading
import time

import pytest

from bulk_import.errors import ConversionServiceError, PersistenceError
from bulk_import.gateway import ConversionGateway
from bulk_import.record_store import InMemoryRecordStore


class MemoryBlobStore:
    """Blob store that keeps objects in a dict and reports chunked progress."""

    def __init__(self, chunk_size: int = 4, stall: bool = False, error: Exception | None = None):
        self.chunk_size = chunk_size
        self.stall = stall
        self.error = error
        self.objects: dict[str, bytes] = {}
        self.aborted = threading.Event()
        self._lock = threading.Lock()

    def upload(self, path, data, content_type, progress=None):
        if self.error is not None:
            raise self.error
        total = len(data)
        if progress is not None:
            progress(0, total)
        if self.stall:
            try:
                while True:
                    time.sleep(0.01)
                    if progress is not None:
                        progress(0, total)
            except Exception:
                self.aborted.set()
                raise
        for sent in range(self.chunk_size, total + self.chunk_size, self.chunk_size):
            if progress is not None:
                progress(min(sent, total), total)
        with self._lock:
            self.objects[path] = data

    def public_url(self, path):
        return f"mem://{path}"


class FakeConversionService:
    """Returns a URL derived from the target path; can fail, hang or return nothing."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.fail_names: set[str] = set()
        self.missing_output = False
        self.calls: list[tuple[str, str, dict]] = []
        self.release = threading.Event()
        self.release.set()
        self._lock = threading.Lock()

    def convert(self, staged_ref, original_filename, context):
        with self._lock:
            self.calls.append((staged_ref, original_filename, dict(context)))
        self.release.wait(5)
        if self.delay:
            time.sleep(self.delay)
        if original_filename in self.fail_names:
            raise ConversionServiceError(f"Simulated failure for {original_filename}")
        if self.missing_output:
            return ""
        return f"mem://{context['targetPath']}"


class CountingRecordStore(InMemoryRecordStore):
    """In-memory store that counts writes and can inject failures."""

    def __init__(self, create_delay: float = 0.0):
        super().__init__()
        self.create_delay = create_delay
        self.create_group_calls = 0
        self.create_item_calls = 0
        self.fail_item_creates = 0
        self.fail_group_creates = False
        self._count_lock = threading.Lock()

    def create_group(self, key, name):
        with self._count_lock:
            self.create_group_calls += 1
        if self.create_delay:
            time.sleep(self.create_delay)
        if self.fail_group_creates:
            raise PersistenceError("Simulated group insert failure")
        return super().create_group(key, name)

    def create_item(self, group_id, subtype, url, original_filename):
        with self._count_lock:
            self.create_item_calls += 1
            if self.fail_item_creates > 0:
                self.fail_item_creates -= 1
                raise PersistenceError("Simulated item insert failure")
        return super().create_item(group_id, subtype, url, original_filename)

    def all_items(self):
        return [item for group in self.list_groups() for item in self.list_items(group.id)]


@pytest.fixture
def blob_store():
    return MemoryBlobStore()


@pytest.fixture
def service():
    return FakeConversionService()


@pytest.fixture
def store():
    return CountingRecordStore()


@pytest.fixture
def gateway(blob_store, service):
    return ConversionGateway(
        blob_store, service, prefix="test", stall_timeout=2.0, max_duration=10.0
    )
