"""Tests for blob storage and media references."""

import pytest

from blockfighters.errors import NotFound
from blockfighters.media.store import (
    InMemoryBlobStore,
    LocalBlobStore,
    content_reference,
    preview_url,
)


@pytest.fixture(params=["memory", "local"])
def blob_store(request, tmp_path):
    if request.param == "memory":
        return InMemoryBlobStore()
    return LocalBlobStore(str(tmp_path / "media"))


class TestBlobStore:
    def test_put_and_get(self, blob_store):
        reference = blob_store.put_blob(b"\x89PNG fake", "image/png")
        data, content_type = blob_store.get_blob(reference)
        assert data == b"\x89PNG fake"
        assert content_type == "image/png"

    def test_content_addressed(self, blob_store):
        first = blob_store.put_blob(b"same bytes")
        second = blob_store.put_blob(b"same bytes")
        assert first == second == content_reference(b"same bytes")
        assert blob_store.put_blob(b"other bytes") != first

    def test_json(self, blob_store):
        reference = blob_store.put_json({"matches": [1, 2]})
        assert blob_store.get_json(reference) == {"matches": [1, 2]}
        assert blob_store.get_blob(reference)[1] == "application/json"

    def test_missing(self, blob_store):
        with pytest.raises(NotFound):
            blob_store.get_blob(content_reference(b"never stored"))

    @pytest.mark.parametrize("reference", ["ipfs://Qm123", "blob://zz", "blob://../../etc/passwd"])
    def test_malformed_reference(self, blob_store, reference):
        with pytest.raises(NotFound):
            blob_store.get_blob(reference)


class TestLocalBlobStore:
    def test_survives_reopen(self, tmp_path):
        root = str(tmp_path / "media")
        reference = LocalBlobStore(root).put_blob(b"portrait", "image/jpeg")
        assert LocalBlobStore(root).get_blob(reference) == (b"portrait", "image/jpeg")


class TestPreviewUrl:
    def test_ipfs(self):
        assert preview_url("ipfs://QmAbc", "gateway.pinata.cloud") == (
            "https://gateway.pinata.cloud/ipfs/QmAbc"
        )

    def test_blob(self):
        reference = content_reference(b"x")
        assert preview_url(reference, "gw") == "/media/" + reference[len("blob://"):]

    def test_plain_url_untouched(self):
        assert preview_url("https://example.org/a.png", "gw") == "https://example.org/a.png"
