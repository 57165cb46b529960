import threading
import time
from collections import Counter

import pytest

from bulk_import.controller import PipelineController, build_controller
from bulk_import.config_utils import Settings
from bulk_import.errors import (
    CommitError,
    InvalidTransitionError,
    PersistenceError,
    StageTransitionError,
)
from bulk_import.gateway import ConversionGateway
from bulk_import.record_store import JsonRecordStore
from bulk_import.schema import UNMATCHED_KEY, ConversionStatus, PipelineStage, RawItem

from conftest import CountingRecordStore, FakeConversionService, MemoryBlobStore


def _controller(store, service, *, concurrency=3, **kwargs):
    gateway = ConversionGateway(
        MemoryBlobStore(), service, prefix="test", stall_timeout=2.0, max_duration=10.0
    )
    return PipelineController(gateway, store, concurrency=concurrency, **kwargs)


def _items(*names):
    return [RawItem(name, b"II*\x00image-bytes") for name in names]


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def test_mixed_batch_creates_one_group_per_key(service):
    store = CountingRecordStore(create_delay=0.02)
    controller = _controller(store, service, concurrency=4)
    controller.submit(
        _items(
            "SKU123-front.png",
            "SKU123-back.tif",
            "SKU999-front.tif",
            "SKU999-back.png",
            "holiday photo.jpg",
        )
    )

    controller.start()

    assert store.create_group_calls == 2
    groups = {group.key: group for group in store.list_groups()}
    assert set(groups) == {"SKU123", "SKU999"}
    assert all(len(store.list_items(group.id)) == 2 for group in groups.values())

    drafts = controller.advance_to_grouping()
    assert [draft.key for draft in drafts] == ["SKU123", "SKU999", UNMATCHED_KEY]
    assert len(drafts[-1].members) == 1

    committed = controller.commit()
    assert [group.group_name for group in committed] == ["SKU123", "SKU999"]
    assert store.create_group_calls == 2
    assert len(store.all_items()) == 4
    assert controller.stage is PipelineStage.CLOSED


def test_failing_item_blocks_grouping_until_retried(service):
    store = CountingRecordStore()
    updates = []
    controller = _controller(
        store, service, on_item_update=lambda index, state: updates.append((index, state.status))
    )
    names = [f"LOOK000{n}-front.tif" for n in range(1, 6)]
    service.fail_names.add("LOOK0003-front.tif")
    session = controller.submit(_items(*names))

    controller.start()

    summary = controller.summary()
    assert (summary.done, summary.failed) == (4, 1)
    assert summary.all_terminal and not summary.can_advance
    assert "Simulated failure" in session.states[2].error_message
    with pytest.raises(StageTransitionError):
        controller.advance_to_grouping()

    updates.clear()
    assert controller.retry_single(2).status is ConversionStatus.FAILED
    assert {index for index, _ in updates} == {2}

    service.fail_names.clear()
    assert controller.retry_single(2).status is ConversionStatus.DONE
    assert controller.summary().can_advance
    assert len(controller.advance_to_grouping()) == 5


def test_failed_items_can_be_left_out_explicitly(service):
    controller = _controller(CountingRecordStore(), service)
    service.fail_names.add("LOOK0002-front.tif")
    controller.submit(_items("LOOK0001-front.tif", "LOOK0002-front.tif"))
    controller.start()

    drafts = controller.advance_to_grouping(allow_failed=True)

    assert [draft.key for draft in drafts] == ["LOOK0001"]


def test_done_items_cannot_be_retried(service):
    controller = _controller(CountingRecordStore(), service)
    session = controller.submit(_items("SKU123-front.tif"))
    controller.start()

    with pytest.raises(InvalidTransitionError):
        controller.retry_single(0)
    assert session.states[0].status is ConversionStatus.DONE


def test_retry_all_failed_reruns_only_failed_items(service):
    controller = _controller(CountingRecordStore(), service)
    service.fail_names.update({"LOOK0001-back.tif", "LOOK0002-back.tif"})
    session = controller.submit(
        _items("LOOK0001-front.tif", "LOOK0001-back.tif", "LOOK0002-back.tif")
    )
    controller.start()
    calls_before = len(service.calls)
    service.fail_names.clear()

    assert controller.retry_all_failed() == 2

    assert len(service.calls) == calls_before + 2
    assert session.all_terminal
    assert session.done_count == 3


def test_twenty_items_five_keys_no_duplicates(service):
    store = CountingRecordStore(create_delay=0.01)
    controller = _controller(store, service, concurrency=6)
    views = ["front", "back", "side", "detail"]
    names = [
        f"LOOK000{key}-{view}.{'tif' if position % 2 else 'png'}"
        for key in range(1, 6)
        for position, view in enumerate(views)
    ]
    controller.submit(_items(*names))

    controller.start()

    assert store.create_group_calls == 5
    assert len(store.list_groups()) == 5
    items = store.all_items()
    assert len(items) == 20
    pairs = Counter((item.group_id, item.url) for item in items)
    assert max(pairs.values()) == 1


def test_final_commit_repairs_missed_progressive_commit(service):
    store = CountingRecordStore()
    store.fail_item_creates = 1
    controller = _controller(store, service, concurrency=1)
    controller.submit(_items("SKU123-front.tif", "SKU123-back.tif", "SKU123-side.tif"))

    controller.start()
    assert controller.summary().done == 3
    assert len(store.all_items()) == 2

    controller.advance_to_grouping()
    [committed] = controller.commit()

    items = store.all_items()
    assert len(items) == 3
    assert len({item.url for item in items}) == 3
    assert len(committed.items) == 3
    assert store.create_group_calls == 1


def test_commit_failure_returns_to_grouping(service):
    store = CountingRecordStore()
    controller = _controller(store, service, progressive_commit=False)
    controller.submit(_items("SKU123-front.tif", "SKU123-back.tif"))
    controller.start()
    controller.advance_to_grouping()
    assert store.all_items() == []

    store.fail_item_creates = 1
    with pytest.raises(CommitError):
        controller.commit()
    assert controller.stage is PipelineStage.GROUPING

    controller.commit()
    assert len(store.all_items()) == 2
    assert controller.session is None


def test_renamed_draft_renames_stored_group(service):
    store = CountingRecordStore()
    controller = _controller(store, service)
    controller.submit(_items("SKU123-front.tif"))
    controller.start()
    controller.advance_to_grouping()

    controller.rename_group("SKU123", "Linen shirt")
    [committed] = controller.commit()

    assert committed.group_name == "Linen shirt"
    assert store.find_group_by_key("SKU123").name == "Linen shirt"


def test_review_edits_flow_into_commit(service):
    store = CountingRecordStore()
    controller = _controller(store, service, progressive_commit=False)
    controller.submit(_items("SKU123-front.tif", "holiday photo.png"))
    controller.start()
    controller.advance_to_grouping()

    controller.move_item(UNMATCHED_KEY, 0, "SKU123")
    controller.set_item_subtype("SKU123", 1, "detail")
    [committed] = controller.commit()

    assert {item.original_filename for item in committed.items} == {
        "SKU123-front.tif",
        "holiday photo.png",
    }
    subtypes = {item.original_filename: item.subtype.value for item in store.all_items()}
    assert subtypes["holiday photo.png"] == "detail"


def test_stage_guards(service):
    controller = _controller(CountingRecordStore(), service)
    with pytest.raises(StageTransitionError):
        controller.start()

    controller.submit(_items("SKU123-front.tif"))
    with pytest.raises(StageTransitionError):
        controller.advance_to_grouping()
    with pytest.raises(StageTransitionError):
        controller.commit()
    with pytest.raises(StageTransitionError):
        controller.back_to_converting()

    controller.start()
    controller.advance_to_grouping()
    controller.back_to_converting()
    assert controller.stage is PipelineStage.CONVERTING
    with pytest.raises(StageTransitionError):
        controller.rename_group("SKU123", "x")


def test_all_failed_batch_cannot_advance(service):
    controller = _controller(CountingRecordStore(), service)
    service.fail_names.add("SKU123-front.tif")
    controller.submit(_items("SKU123-front.tif"))
    controller.start()

    with pytest.raises(StageTransitionError):
        controller.advance_to_grouping(allow_failed=True)


def test_start_is_idempotent_while_running(service):
    controller = _controller(CountingRecordStore(), service)
    controller.submit(_items("SKU123-front.tif", "SKU123-back.tif"))
    service.release.clear()

    assert controller.start(wait=False) is True
    try:
        assert _wait_for(controller.is_running)
        assert controller.start() is False
        assert controller.retry_all_failed() == 0
    finally:
        service.release.set()

    assert _wait_for(lambda: not controller.is_running())
    assert controller.summary().done == 2


def test_reset_discards_late_results(service):
    store = CountingRecordStore()
    controller = _controller(store, service, concurrency=1)
    session = controller.submit(_items("SKU123-front.tif", "SKU123-back.tif"))
    service.release.clear()
    controller.start(wait=False)
    assert _wait_for(lambda: len(service.calls) == 1)

    controller.reset()
    service.release.set()
    time.sleep(0.3)

    assert controller.session is None
    assert session.closed
    assert session.done_count == 0
    assert store.all_items() == []
    assert len(service.calls) == 1


def test_updates_follow_item_lifecycle(service):
    updates = []
    lock = threading.Lock()

    def _listener(index, state):
        with lock:
            updates.append(state.status)

    controller = _controller(CountingRecordStore(), service, on_item_update=_listener)
    controller.submit(_items("SKU123-front.tif"))
    controller.start()

    assert updates[0] is ConversionStatus.UPLOADING
    assert ConversionStatus.CONVERTING in updates
    assert updates[-1] is ConversionStatus.DONE


def test_empty_batch_is_rejected(service):
    with pytest.raises(ValueError):
        _controller(CountingRecordStore(), service).submit([])


def test_build_controller_uses_local_stores(tmp_path):
    settings = Settings.model_validate(
        {
            "pipeline": {"concurrency": 2},
            "storage": {
                "root": str(tmp_path / "blobs"),
                "base_url": "file://blobs",
                "records_path": str(tmp_path / "records.json"),
            },
        }
    )

    controller = build_controller(settings)

    assert controller.concurrency == 2
    assert isinstance(controller.store, JsonRecordStore)


def test_build_controller_requires_service_for_remote_storage():
    settings = Settings.model_validate({"storage": {"endpoint": "https://storage.test"}})

    with pytest.raises(ValueError):
        build_controller(settings, store=CountingRecordStore())


def test_build_controller_with_remote_service(tmp_path):
    settings = Settings.model_validate(
        {
            "storage": {"endpoint": "https://storage.test", "bucket": "looks"},
            "conversion": {"service_url": "https://fn.test/convert"},
        }
    )

    controller = build_controller(settings, store=CountingRecordStore())

    assert controller.pipeline.gateway.blob_store.bucket == "looks"
    assert controller.pipeline.gateway.service.url == "https://fn.test/convert"


def test_retried_commit_renames_after_failed_write(service, tmp_path):
    path = tmp_path / "records.json"
    store = JsonRecordStore(path)
    controller = _controller(store, service)
    controller.submit(_items("SKU123-front.tif"))
    controller.start()
    controller.advance_to_grouping()
    controller.rename_group("SKU123", "Summer shirt")

    failures = [PersistenceError("disk full")]
    write = store._persist

    def _fail_once():
        if failures:
            raise failures.pop()
        write()

    store._persist = _fail_once
    with pytest.raises(CommitError):
        controller.commit()
    assert controller.stage is PipelineStage.GROUPING

    [committed] = controller.commit()

    assert committed.group_name == "Summer shirt"
    assert JsonRecordStore(path).find_group_by_key("SKU123").name == "Summer shirt"


@pytest.mark.parametrize("progressive_commit", [True, False])
def test_group_name_does_not_depend_on_commit_mode(service, progressive_commit):
    store = CountingRecordStore()
    controller = _controller(store, service, progressive_commit=progressive_commit)
    controller.submit(_items("LOOK0001 short#001.tif", "LOOK0001 short#002.tif"))
    controller.start()

    [draft] = controller.advance_to_grouping()
    [committed] = controller.commit()

    assert draft.name == "LOOK0001 - short"
    assert committed.group_name == "LOOK0001 - short"
    assert store.find_group_by_key("LOOK0001").name == "LOOK0001 - short"
    assert store.create_group_calls == 1
