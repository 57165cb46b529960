"""Progressive commit: persist each converted item as soon as it is done."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from enum import Enum
from pathlib import Path

from bulk_import.group_resolver import GroupResolver
from bulk_import.grouping import group_display_name
from bulk_import.record_store import RecordStore
from bulk_import.schema import UNMATCHED_KEY, Classification, Subtype

logger = logging.getLogger(__name__)


class CommitOutcome(str, Enum):
    COMMITTED = "committed"
    ALREADY_PRESENT = "already_present"


def synthesized_group_key(item_id: str) -> str:
    """Unique key for a file the classifier could not place in any group."""
    return f"{UNMATCHED_KEY}-{item_id}"


class _SharedLock:
    """A per-URL lock that is dropped once nobody holds or waits on it."""

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0


class ProgressiveCommitCoordinator:
    def __init__(self, store: RecordStore, resolver: GroupResolver):
        self.store = store
        self.resolver = resolver
        self._guard = threading.Lock()
        self._url_locks: dict[tuple[str, str], _SharedLock] = {}

    def commit(
        self,
        classification: Classification,
        output_url: str,
        original_filename: str,
        item_id: str,
    ) -> CommitOutcome:
        """Resolve the item's group and insert the item unless it already exists."""
        if classification.group_key:
            group_id = self.resolver.resolve(
                classification.group_key,
                name=group_display_name(
                    classification.group_key, classification.descriptor
                ),
            )
        else:
            group_id = self.resolver.resolve(
                synthesized_group_key(item_id),
                name=Path(original_filename).stem or original_filename,
            )
        return self.commit_to_group(
            group_id, classification.subtype, output_url, original_filename
        )

    def commit_to_group(
        self,
        group_id: str,
        subtype: Subtype,
        output_url: str,
        original_filename: str,
    ) -> CommitOutcome:
        with self._url_lock(group_id, output_url):
            if self.store.find_item_by_group_and_url(group_id, output_url) is not None:
                logger.debug(
                    "Item %s already committed under group %s", output_url, group_id
                )
                return CommitOutcome.ALREADY_PRESENT
            self.store.create_item(group_id, subtype, output_url, original_filename)
        logger.debug("Committed %s to group %s", original_filename, group_id)
        return CommitOutcome.COMMITTED

    def commit_safely(
        self,
        classification: Classification,
        output_url: str,
        original_filename: str,
        item_id: str,
    ) -> CommitOutcome | None:
        """Like ``commit`` but logs and swallows failures; the file is already stored."""
        try:
            return self.commit(classification, output_url, original_filename, item_id)
        except Exception as exc:
            logger.warning(
                "Progressive commit failed for %s (%s); linkage deferred to final "
                "commit: %s",
                original_filename,
                output_url,
                exc,
            )
            return None

    @contextmanager
    def _url_lock(self, group_id: str, url: str) -> Iterator[None]:
        key = (group_id, url)
        with self._guard:
            shared = self._url_locks.get(key)
            if shared is None:
                shared = self._url_locks[key] = _SharedLock()
            shared.users += 1
        try:
            with shared.lock:
                yield
        finally:
            with self._guard:
                shared.users -= 1
                if shared.users == 0:
                    del self._url_locks[key]
