"""Per-item state machine: queued -> uploading -> converting -> done | failed."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from bulk_import.commit import ProgressiveCommitCoordinator
from bulk_import.errors import ConversionError
from bulk_import.gateway import ConversionGateway
from bulk_import.schema import ConversionState, ConversionStatus
from bulk_import.session import PipelineSession

ItemUpdateListener = Callable[[int, ConversionState], None]

logger = logging.getLogger(__name__)


class ItemPipeline:
    def __init__(
        self,
        gateway: ConversionGateway,
        coordinator: ProgressiveCommitCoordinator | None = None,
        *,
        commit_unmatched: bool = False,
        on_update: ItemUpdateListener | None = None,
    ):
        self.gateway = gateway
        self.coordinator = coordinator
        self.commit_unmatched = commit_unmatched
        self.on_update = on_update

    def process(self, session: PipelineSession, index: int) -> ConversionStatus:
        """Drive one queued item to a terminal state.

        Conversion failures land on the item; they are never raised. Results
        that arrive after the session was closed are dropped.
        """
        state = session.states[index]
        raw_item = session.raw_items[index]
        classification = session.classifications[index]

        if session.closed:
            return state.status

        state.mark_uploading()
        self.emit(session, index)
        stage_start = time.time()

        def _on_progress(percent: float) -> None:
            if not session.closed and state.set_progress(percent):
                self.emit(session, index)

        def _on_phase(status: ConversionStatus) -> None:
            if not session.closed and status is ConversionStatus.CONVERTING:
                state.mark_converting()
                self.emit(session, index)

        try:
            result = self.gateway.convert(
                raw_item, on_progress=_on_progress, on_phase=_on_phase
            )
        except ConversionError as exc:
            return self._fail(session, index, str(exc))
        except Exception as exc:
            logger.exception(
                "Unexpected error converting %s", raw_item.original_filename
            )
            return self._fail(session, index, f"Unexpected error: {exc}")

        if session.closed:
            logger.info(
                "Discarding result for %s; session %s was closed",
                raw_item.original_filename,
                session.id,
            )
            return state.status

        state.mark_done(result.output_url, result.staging_path)
        self.emit(session, index)
        logger.info(
            "Converted %s in %.2fs -> %s",
            raw_item.original_filename,
            time.time() - stage_start,
            result.output_url,
        )

        if self.coordinator is not None and (
            classification.group_key or self.commit_unmatched
        ):
            self.coordinator.commit_safely(
                classification,
                result.output_url,
                raw_item.original_filename,
                raw_item.id,
            )
        return state.status

    def _fail(self, session: PipelineSession, index: int, message: str) -> ConversionStatus:
        state = session.states[index]
        if session.closed:
            return state.status
        state.mark_failed(message)
        self.emit(session, index)
        logger.warning(
            "Conversion failed for %s: %s",
            session.raw_items[index].original_filename,
            message,
        )
        return state.status

    def emit(self, session: PipelineSession, index: int) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(index, session.states[index].snapshot())
        except Exception as exc:
            logger.warning("Item update listener failed for item %d: %s", index, exc)
