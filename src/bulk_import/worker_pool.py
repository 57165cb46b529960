"""Bounded-concurrency driver over a session's queued items."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable

from bulk_import.config_utils import DEFAULT_CONCURRENCY
from bulk_import.item_pipeline import ItemPipeline
from bulk_import.schema import ConversionStatus
from bulk_import.session import PipelineSession

SnapshotHook = Callable[[], Iterable[int] | None]

logger = logging.getLogger(__name__)


class _IndexCursor:
    """Hands out each index exactly once across all workers."""

    def __init__(self, indices: list[int]):
        self._indices = indices
        self._position = 0
        self._lock = threading.Lock()

    def claim(self) -> int | None:
        with self._lock:
            if self._position >= len(self._indices):
                return None
            index = self._indices[self._position]
            self._position += 1
            return index


class WorkerPool:
    """Runs queued items of one session through the item pipeline.

    Only one run is active at a time; calling ``run`` while another run is in
    flight returns ``False`` without doing anything.
    """

    def __init__(self, pipeline: ItemPipeline, concurrency: int = DEFAULT_CONCURRENCY):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.pipeline = pipeline
        self.concurrency = concurrency
        self._run_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def run(
        self,
        session: PipelineSession,
        *,
        before_snapshot: SnapshotHook | None = None,
    ) -> bool:
        """Process every item queued at the moment the run starts.

        ``before_snapshot`` runs under the re-entrancy guard; if it returns
        indices, the run is limited to those.
        """
        if not self._run_lock.acquire(blocking=False):
            logger.debug("Run already active for session %s; ignoring", session.id)
            return False

        try:
            only = before_snapshot() if before_snapshot is not None else None
            queued = session.indices_with_status(ConversionStatus.QUEUED)
            if only is not None:
                allowed = set(only)
                queued = [index for index in queued if index in allowed]
            if not queued:
                logger.debug("No queued items in session %s", session.id)
                return True

            worker_count = min(self.concurrency, len(queued))
            cursor = _IndexCursor(queued)
            logger.info(
                "Converting %d item(s) with %d worker(s) [session %s]",
                len(queued),
                worker_count,
                session.id,
            )
            run_start = time.time()
            threads = [
                threading.Thread(
                    target=self._worker,
                    args=(worker_id, session, cursor),
                    name=f"convert-worker-{worker_id}",
                    daemon=True,
                )
                for worker_id in range(1, worker_count + 1)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join()

            counts = session.counts()
            logger.info(
                "Run finished in %.2fs: %d done, %d failed, %d total [session %s]",
                time.time() - run_start,
                counts[ConversionStatus.DONE],
                counts[ConversionStatus.FAILED],
                len(session),
                session.id,
            )
            return True
        finally:
            self._run_lock.release()

    def _worker(
        self, worker_id: int, session: PipelineSession, cursor: _IndexCursor
    ) -> None:
        worker_logger = logger.getChild(f"worker-{worker_id}")
        worker_logger.debug("Conversion worker %d started", worker_id)

        while True:
            index = cursor.claim()
            if index is None:
                break
            if session.closed:
                worker_logger.debug("Session %s closed; stopping", session.id)
                break
            if session.states[index].status is not ConversionStatus.QUEUED:
                continue

            try:
                self.pipeline.process(session, index)
            except Exception as e:
                worker_logger.error(
                    "Worker %d failed on item %d (%s): %s",
                    worker_id,
                    index,
                    session.raw_items[index].original_filename,
                    e,
                )

        worker_logger.debug("Conversion worker %d stopped", worker_id)
