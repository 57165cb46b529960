"""Single-flight group resolution.

Many workers finish items of the same look at nearly the same moment and all
ask for "the group for key X". ``GroupResolver`` makes sure only one of them
talks to the record store for a given key: the first caller becomes the
leader and runs the lookup/create, everybody else waits on the leader's
future and gets the same group id (or the same exception). The lock only
guards the cache and the in-flight map, so different keys resolve in
parallel.

Within one process at most one ``create_group`` is issued per key. Across
process restarts the store lookup in ``_resolve_uncached`` is what prevents
duplicates.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future

from bulk_import.classifier import derive_key_from_name, normalize_key
from bulk_import.record_store import RecordStore
from bulk_import.schema import Group

logger = logging.getLogger(__name__)


class GroupResolver:
    def __init__(self, store: RecordStore):
        self.store = store
        self._lock = threading.Lock()
        self._cache: dict[str, str] = {}
        self._in_flight: dict[str, Future[str]] = {}

    def resolve(self, key: str, name: str | None = None) -> str:
        """Return the id of the group for ``key``, creating it at most once.

        ``name`` is only used when a new group has to be created.
        """
        normalized = normalize_key(key)
        if not normalized:
            raise ValueError("Group key must not be empty")

        with self._lock:
            cached = self._cache.get(normalized)
            if cached is not None:
                return cached
            pending = self._in_flight.get(normalized)
            if pending is None:
                pending = Future()
                self._in_flight[normalized] = pending
                is_leader = True
            else:
                is_leader = False

        if not is_leader:
            logger.debug("Waiting on in-flight resolution for %s", normalized)
            return pending.result()

        # The in-flight entry is dropped before waiters are woken, so a caller
        # arriving after a failure starts a fresh resolution.
        try:
            group_id = self._resolve_uncached(normalized, name)
        except BaseException as exc:
            self._finish(normalized)
            pending.set_exception(exc)
            raise
        self._finish(normalized)
        pending.set_result(group_id)
        return group_id

    def _finish(self, key: str) -> None:
        with self._lock:
            self._in_flight.pop(key, None)

    def _resolve_uncached(self, key: str, name: str | None) -> str:
        with self._lock:
            cached = self._cache.get(key)
        if cached is not None:
            return cached

        existing = self.store.find_group_by_key(key) or self._find_legacy_group(key)
        if existing is not None:
            logger.debug("Found existing group %s for key %s", existing.id, key)
            group_id = existing.id
        else:
            created = self.store.create_group(key, name or key)
            logger.info("Created group %s for key %s", created.id, key)
            group_id = created.id

        with self._lock:
            self._cache[key] = group_id
        return group_id

    def _find_legacy_group(self, key: str) -> Group | None:
        # Groups written before the key column existed only carry a name.
        for group in self.store.list_groups():
            if group.key:
                continue
            derived = derive_key_from_name(group.name)
            if derived is not None and normalize_key(derived) == key:
                return group
        return None

    def forget(self, key: str) -> None:
        with self._lock:
            self._cache.pop(normalize_key(key), None)

    def cached_keys(self) -> list[str]:
        with self._lock:
            return sorted(self._cache)
