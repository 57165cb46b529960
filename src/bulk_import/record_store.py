"""Grouped record store: groups and the items attached to them."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError

from bulk_import.classifier import normalize_key
from bulk_import.errors import PersistenceError
from bulk_import.schema import Group, Item, Subtype

logger = logging.getLogger(__name__)


class RecordStore(Protocol):
    def find_group_by_key(self, key: str) -> Group | None: ...

    def list_groups(self) -> list[Group]: ...

    def get_group(self, group_id: str) -> Group | None: ...

    def create_group(self, key: str | None, name: str) -> Group: ...

    def rename_group(self, group_id: str, name: str) -> Group: ...

    def find_item_by_group_and_url(self, group_id: str, url: str) -> Item | None: ...

    def create_item(
        self,
        group_id: str,
        subtype: Subtype | str,
        url: str,
        original_filename: str,
    ) -> Item: ...

    def list_items(self, group_id: str) -> list[Item]: ...


class InMemoryRecordStore:
    """Thread-safe store with read-your-writes consistency inside one process."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._groups: dict[str, Group] = {}
        self._items: dict[str, Item] = {}

    def find_group_by_key(self, key: str) -> Group | None:
        wanted = normalize_key(key)
        with self._lock:
            for group in self._groups.values():
                if group.key == wanted:
                    return group.model_copy()
        return None

    def list_groups(self) -> list[Group]:
        with self._lock:
            return [group.model_copy() for group in self._groups.values()]

    def get_group(self, group_id: str) -> Group | None:
        with self._lock:
            group = self._groups.get(group_id)
            return group.model_copy() if group else None

    def create_group(self, key: str | None, name: str) -> Group:
        try:
            group = Group(key=key, name=name)
        except ValidationError as exc:
            raise PersistenceError(f"Invalid group {name!r}: {exc}") from exc
        with self._lock:
            self._groups[group.id] = group
            try:
                self._persist()
            except PersistenceError:
                del self._groups[group.id]
                raise
        logger.debug("Created group %s (key=%s, name=%s)", group.id, group.key, name)
        return group.model_copy()

    def rename_group(self, group_id: str, name: str) -> Group:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise PersistenceError(f"Unknown group {group_id}")
            previous = group.name
            group.name = name
            try:
                self._persist()
            except PersistenceError:
                group.name = previous
                raise
            return group.model_copy()

    def find_item_by_group_and_url(self, group_id: str, url: str) -> Item | None:
        with self._lock:
            for item in self._items.values():
                if item.group_id == group_id and item.url == url:
                    return item.model_copy()
        return None

    def create_item(
        self,
        group_id: str,
        subtype: Subtype | str,
        url: str,
        original_filename: str,
    ) -> Item:
        try:
            item = Item(
                group_id=group_id,
                subtype=subtype,
                url=url,
                original_filename=original_filename,
            )
        except ValidationError as exc:
            raise PersistenceError(f"Invalid item {original_filename!r}: {exc}") from exc
        with self._lock:
            if group_id not in self._groups:
                raise PersistenceError(f"Unknown group {group_id}")
            self._items[item.id] = item
            try:
                self._persist()
            except PersistenceError:
                del self._items[item.id]
                raise
        return item.model_copy()

    def list_items(self, group_id: str) -> list[Item]:
        with self._lock:
            return [
                item.model_copy()
                for item in self._items.values()
                if item.group_id == group_id
            ]

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""


class JsonRecordStore(InMemoryRecordStore):
    """In-memory store that rewrites a JSON file after every change."""

    def __init__(self, path: Path | str):
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with self.path.open(encoding="utf-8") as handle:
                data = json.load(handle)
            groups = [Group.model_validate(entry) for entry in data.get("groups", [])]
            items = [Item.model_validate(entry) for entry in data.get("items", [])]
        except (json.JSONDecodeError, ValidationError) as exc:
            raise PersistenceError(f"Record file {self.path} is corrupted: {exc}") from exc

        self._groups = {group.id: group for group in groups}
        self._items = {item.id: item for item in items}
        legacy = sum(1 for group in groups if group.key is None)
        logger.info(
            "Loaded %d groups (%d without key) and %d items from %s",
            len(groups),
            legacy,
            len(items),
            self.path,
        )

    def _persist(self) -> None:
        data = {
            "groups": [group.model_dump(mode="json") for group in self._groups.values()],
            "items": [item.model_dump(mode="json") for item in self._items.values()],
        }
        temp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f"{self.path.stem}-",
                suffix=".tmp",
                delete=False,
            ) as tmp_file:
                temp_path = Path(tmp_file.name)
                json.dump(data, tmp_file, indent=2)
                tmp_file.flush()
                os.fsync(tmp_file.fileno())
            os.replace(temp_path, self.path)
            temp_path = None
        except OSError as exc:
            raise PersistenceError(f"Could not write {self.path}: {exc}") from exc
        finally:
            if temp_path and temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError:
                    pass
