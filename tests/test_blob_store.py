import httpx
import pytest

from bulk_import.blob_store import HttpBlobStore, LocalBlobStore
from bulk_import.errors import TransferError


def test_local_upload_reports_progress(tmp_path):
    store = LocalBlobStore(tmp_path, "file://blobs", chunk_size=3)
    progress = []

    store.upload("a/b/c.png", b"0123456", "image/png", progress=lambda s, t: progress.append((s, t)))

    assert (tmp_path / "a" / "b" / "c.png").read_bytes() == b"0123456"
    assert progress == [(0, 7), (3, 7), (6, 7), (7, 7)]
    assert store.public_url("a/b/c d.png") == "file://blobs/a/b/c%20d.png"


def test_local_read_and_delete(tmp_path):
    store = LocalBlobStore(tmp_path, "file://blobs")
    store.upload("x.tif", b"II*\x00", "image/tiff")

    assert store.exists("x.tif")
    assert store.read("x.tif") == b"II*\x00"
    store.delete("x.tif")
    assert not store.exists("x.tif")


def test_local_refuses_paths_outside_root(tmp_path):
    store = LocalBlobStore(tmp_path / "root", "file://blobs")

    with pytest.raises(TransferError):
        store.upload("../escape.png", b"x", "image/png")


def test_http_upload_streams_to_bucket():
    received = {}

    def handler(request: httpx.Request) -> httpx.Response:
        received["url"] = str(request.url)
        received["body"] = request.read()
        received["content_type"] = request.headers["content-type"]
        return httpx.Response(200, json={"Key": "ok"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    store = HttpBlobStore("https://storage.test/v1", "looks", chunk_size=2, client=client)
    progress = []

    store.upload("p/staging/a.tif", b"abcde", "image/tiff", progress=lambda s, t: progress.append(s))

    assert received["url"] == "https://storage.test/v1/object/looks/p/staging/a.tif"
    assert received["body"] == b"abcde"
    assert received["content_type"] == "image/tiff"
    assert progress[-1] == 5
    assert store.public_url("p/a.png") == "https://storage.test/v1/object/public/looks/p/a.png"


def test_http_upload_rejection_is_a_transfer_error():
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(403)))
    store = HttpBlobStore("https://storage.test/v1", "looks", client=client)

    with pytest.raises(TransferError, match="403"):
        store.upload("a.png", b"x", "image/png")
