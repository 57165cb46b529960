"""Stage orchestration for one bulk import: convert -> group/review -> commit."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from bulk_import.blob_store import HttpBlobStore, LocalBlobStore
from bulk_import.commit import ProgressiveCommitCoordinator
from bulk_import.config_utils import DEFAULT_CONCURRENCY, Settings
from bulk_import.conversion_service import HttpConversionService, PillowConversionService
from bulk_import.errors import (
    CommitError,
    InvalidTransitionError,
    PersistenceError,
    StageTransitionError,
)
from bulk_import.gateway import ConversionGateway
from bulk_import.group_resolver import GroupResolver
from bulk_import.grouping import (
    GroupDraft,
    build_group_drafts,
    move_member,
    rename_draft,
    set_member_subtype,
)
from bulk_import.item_pipeline import ItemPipeline, ItemUpdateListener
from bulk_import.record_store import JsonRecordStore, RecordStore
from bulk_import.schema import (
    CommittedGroup,
    CommittedItem,
    ConversionState,
    ConversionStatus,
    PipelineStage,
    RawItem,
    Subtype,
)
from bulk_import.session import PipelineSession
from bulk_import.worker_pool import WorkerPool

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineSummary:
    stage: PipelineStage
    total: int
    queued: int
    uploading: int
    converting: int
    done: int
    failed: int

    @property
    def all_terminal(self) -> bool:
        return self.done + self.failed == self.total

    @property
    def can_advance(self) -> bool:
        return (
            self.stage is PipelineStage.CONVERTING
            and self.all_terminal
            and self.done > 0
            and self.failed == 0
        )


class PipelineController:
    """Owns the session, the worker pool and the commit machinery for a batch.

    The group resolver (and its cache) outlives individual sessions, so
    repeated imports into the same store keep reusing known groups.
    """

    def __init__(
        self,
        gateway: ConversionGateway,
        store: RecordStore,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        progressive_commit: bool = True,
        commit_unmatched: bool = False,
        on_item_update: ItemUpdateListener | None = None,
        resolver: GroupResolver | None = None,
    ):
        self.store = store
        self.resolver = resolver or GroupResolver(store)
        self.coordinator = ProgressiveCommitCoordinator(store, self.resolver)
        self.concurrency = concurrency
        self.pipeline = ItemPipeline(
            gateway,
            self.coordinator if progressive_commit else None,
            commit_unmatched=commit_unmatched,
            on_update=on_item_update,
        )
        self._lock = threading.RLock()
        self._session: PipelineSession | None = None
        self._pool: WorkerPool | None = None

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    @property
    def session(self) -> PipelineSession | None:
        return self._session

    @property
    def stage(self) -> PipelineStage:
        session = self._session
        return session.stage if session is not None else PipelineStage.CLOSED

    @property
    def drafts(self) -> list[GroupDraft]:
        return list(self._require_session().drafts)

    def submit(self, items: Iterable[RawItem]) -> PipelineSession:
        """Start a new session for ``items``, discarding any previous one."""
        with self._lock:
            self._discard_session()
            session = PipelineSession.from_items(items)
            if not len(session):
                raise ValueError("Cannot submit an empty batch")
            self._session = session
            self._pool = WorkerPool(self.pipeline, self.concurrency)
        logger.info("Submitted %d file(s) as session %s", len(session), session.id)
        return session

    def reset(self) -> None:
        """Discard the current session; late results from in-flight work are ignored."""
        with self._lock:
            self._discard_session()

    close = reset

    def _discard_session(self) -> None:
        if self._session is not None:
            self._session.closed = True
            if self._session.stage is not PipelineStage.CLOSED:
                logger.info("Discarding session %s", self._session.id)
            self._session.stage = PipelineStage.CLOSED
        self._session = None
        self._pool = None

    def _require_session(self) -> PipelineSession:
        session = self._session
        if session is None:
            raise StageTransitionError("No active import session")
        return session

    def _require_stage(self, expected: PipelineStage) -> PipelineSession:
        session = self._require_session()
        if session.stage is not expected:
            raise StageTransitionError(
                f"Session is {session.stage.value}, expected {expected.value}"
            )
        return session

    # ------------------------------------------------------------------
    # Conversion stage
    # ------------------------------------------------------------------

    def start(self, *, wait: bool = True) -> bool:
        """Convert every queued item. A no-op returning False if a run is active."""
        with self._lock:
            session = self._require_stage(PipelineStage.CONVERTING)
            pool = self._pool
            if pool is None or pool.is_running:
                return False

        if wait:
            return pool.run(session)

        threading.Thread(
            target=pool.run, args=(session,), name="convert-run", daemon=True
        ).start()
        return True

    def is_running(self) -> bool:
        pool = self._pool
        return pool is not None and pool.is_running

    def retry_single(self, index: int) -> ConversionState:
        """Re-queue one failed item and drive it immediately in this thread."""
        with self._lock:
            session = self._require_stage(PipelineStage.CONVERTING)
            state = session.states[index]
            if state.status is not ConversionStatus.FAILED:
                raise InvalidTransitionError(
                    f"Item {index} is {state.status.value}; only failed items can be retried"
                )
            state.reset_for_retry()
            logger.info("Retrying %s", session.raw_items[index].original_filename)
            self.pipeline.emit(session, index)

        self.pipeline.process(session, index)
        return state.snapshot()

    def retry_all_failed(self, *, wait: bool = True) -> int:
        """Re-queue every failed item and run exactly those; returns how many."""
        with self._lock:
            session = self._require_stage(PipelineStage.CONVERTING)
            pool = self._pool
        if pool is None:
            return 0

        reset: list[int] = []

        def _reset_failed() -> list[int]:
            with self._lock:
                for index in session.indices_with_status(ConversionStatus.FAILED):
                    session.states[index].reset_for_retry()
                    reset.append(index)
                    self.pipeline.emit(session, index)
            logger.info("Retrying %d failed item(s)", len(reset))
            return list(reset)

        if not wait:
            if pool.is_running:
                return 0
            failed = len(session.indices_with_status(ConversionStatus.FAILED))
            threading.Thread(
                target=pool.run,
                args=(session,),
                kwargs={"before_snapshot": _reset_failed},
                name="retry-run",
                daemon=True,
            ).start()
            return failed

        if not pool.run(session, before_snapshot=_reset_failed):
            logger.info("A conversion run is already active; retry-all skipped")
            return 0
        return len(reset)

    def summary(self) -> PipelineSummary:
        session = self._require_session()
        counts = session.counts()
        return PipelineSummary(
            stage=session.stage,
            total=len(session),
            queued=counts[ConversionStatus.QUEUED],
            uploading=counts[ConversionStatus.UPLOADING],
            converting=counts[ConversionStatus.CONVERTING],
            done=counts[ConversionStatus.DONE],
            failed=counts[ConversionStatus.FAILED],
        )

    # ------------------------------------------------------------------
    # Grouping / review stage
    # ------------------------------------------------------------------

    def advance_to_grouping(self, *, allow_failed: bool = False) -> list[GroupDraft]:
        """Build group drafts from the converted files.

        Failed files block the move until they are retried, unless the caller
        passes ``allow_failed`` to leave them out of the import.
        """
        with self._lock:
            session = self._require_stage(PipelineStage.CONVERTING)
            if not session.all_terminal:
                raise StageTransitionError(
                    "Some files are still converting; wait for them to finish"
                )
            failed = len(session.indices_with_status(ConversionStatus.FAILED))
            if failed and not allow_failed:
                raise StageTransitionError(
                    f"{failed} file(s) failed; retry them or continue without them"
                )
            if session.done_count == 0:
                raise StageTransitionError("No file converted successfully")
            session.drafts = build_group_drafts(session.done_entries())
            session.stage = PipelineStage.GROUPING
            logger.info(
                "Grouped %d converted file(s) into %d draft(s)",
                session.done_count,
                len(session.drafts),
            )
            return list(session.drafts)

    def back_to_converting(self) -> None:
        with self._lock:
            session = self._require_stage(PipelineStage.GROUPING)
            session.drafts = []
            session.stage = PipelineStage.CONVERTING

    def rename_group(self, key: str, name: str) -> list[GroupDraft]:
        with self._lock:
            session = self._require_stage(PipelineStage.GROUPING)
            session.drafts = rename_draft(session.drafts, key, name)
            return list(session.drafts)

    def move_item(self, from_key: str, position: int, to_key: str) -> list[GroupDraft]:
        with self._lock:
            session = self._require_stage(PipelineStage.GROUPING)
            session.drafts = move_member(session.drafts, from_key, position, to_key)
            return list(session.drafts)

    def set_item_subtype(
        self, key: str, position: int, subtype: Subtype | str
    ) -> list[GroupDraft]:
        with self._lock:
            session = self._require_stage(PipelineStage.GROUPING)
            session.drafts = set_member_subtype(
                session.drafts, key, position, Subtype(subtype)
            )
            return list(session.drafts)

    # ------------------------------------------------------------------
    # Final commit
    # ------------------------------------------------------------------

    def commit(self) -> list[CommittedGroup]:
        """Make sure every reviewed group and item exists, then close the session.

        On failure the session returns to the grouping stage so the whole
        commit can be retried.
        """
        with self._lock:
            session = self._require_stage(PipelineStage.GROUPING)
            session.stage = PipelineStage.COMMITTING
            drafts = list(session.drafts)

        try:
            committed = self._final_commit(drafts)
        except Exception as exc:
            with self._lock:
                if not session.closed:
                    session.stage = PipelineStage.GROUPING
            logger.error("Final commit failed for session %s: %s", session.id, exc)
            raise CommitError(f"Final commit failed: {exc}") from exc

        with self._lock:
            if self._session is session:
                self._discard_session()
        logger.info(
            "Committed %d group(s) with %d item(s)",
            len(committed),
            sum(len(group.items) for group in committed),
        )
        return committed

    def _final_commit(self, drafts: list[GroupDraft]) -> list[CommittedGroup]:
        committed: list[CommittedGroup] = []
        for draft in drafts:
            if draft.is_unmatched or not draft.members:
                continue

            group_id = self.resolver.resolve(draft.key, name=draft.name)
            group = self.store.get_group(group_id)
            if group is None:
                self.resolver.forget(draft.key)
                raise PersistenceError(f"Group {group_id} for {draft.key} disappeared")
            if draft.renamed and group.name != draft.name:
                group = self.store.rename_group(group_id, draft.name)

            items = []
            for member in draft.members:
                self.coordinator.commit_to_group(
                    group_id, member.subtype, member.url, member.original_filename
                )
                items.append(
                    CommittedItem(
                        url=member.url,
                        subtype=member.subtype,
                        original_filename=member.original_filename,
                    )
                )
            committed.append(
                CommittedGroup(group_id=group_id, group_name=group.name, items=items)
            )
        return committed


def build_controller(
    settings: Settings,
    *,
    on_item_update: ItemUpdateListener | None = None,
    store: RecordStore | None = None,
) -> PipelineController:
    """Wire stores, conversion service and gateway from configuration."""
    storage = settings.storage
    conversion = settings.conversion

    if storage.endpoint:
        blob_store = HttpBlobStore(
            storage.endpoint, storage.bucket, headers=storage.headers
        )
    else:
        blob_store = LocalBlobStore(storage.root, storage.base_url)

    if conversion.service_url:
        service = HttpConversionService(
            conversion.service_url,
            headers=conversion.headers,
            timeout=conversion.timeout_s,
        )
    elif isinstance(blob_store, LocalBlobStore):
        service = PillowConversionService(blob_store)
    else:
        raise ValueError(
            "A remote blob store needs conversion.service_url to be configured"
        )

    gateway = ConversionGateway(
        blob_store,
        service,
        prefix=storage.prefix,
        stall_timeout=settings.pipeline.stall_timeout_s,
        max_duration=settings.pipeline.max_duration_s,
    )
    return PipelineController(
        gateway,
        store if store is not None else JsonRecordStore(storage.records_path),
        concurrency=settings.pipeline.concurrency,
        progressive_commit=settings.pipeline.progressive_commit,
        commit_unmatched=settings.pipeline.commit_unmatched,
        on_item_update=on_item_update,
    )
