from __future__ import annotations

import pytest

from services.ingestion.storage import ImageRef, LocalImageStore, RefKind, StorageError


def test_put_get_copy_delete(tmp_path):
    s = LocalImageStore(str(tmp_path))
    stored = s.put(b"abc", "batches/b1/e1/a.jpg")
    assert stored.size == 3
    assert s.get_bytes("batches/b1/e1/a.jpg") == b"abc"

    copied = s.copy("batches/b1/e1/a.jpg", "medicines/e1_0.jpg")
    assert copied.size == 3
    assert s.get_bytes("medicines/e1_0.jpg") == b"abc"

    s.delete("batches/b1/e1/a.jpg")
    with pytest.raises(StorageError):
        s.get_bytes("batches/b1/e1/a.jpg")
    # deleting again is harmless
    s.delete("batches/b1/e1/a.jpg")


@pytest.mark.parametrize("key", ["", "/etc/passwd", "../outside.jpg", "a/../../b.jpg"])
def test_rejects_unsafe_keys(tmp_path, key):
    s = LocalImageStore(str(tmp_path))
    with pytest.raises(StorageError):
        s.put(b"x", key)


def test_copy_missing_source(tmp_path):
    s = LocalImageStore(str(tmp_path))
    with pytest.raises(StorageError):
        s.copy("nope.jpg", "medicines/x.jpg")


def test_resolve_reference_bytes_and_url(tmp_path):
    local = LocalImageStore(str(tmp_path))
    local.put(b"png!", "a b.png")
    ref = local.resolve_reference("a b.png", content_type="image/png")
    assert ref == ImageRef.raw(b"png!", "image/png")

    public = LocalImageStore(str(tmp_path), public_base_url="http://img.local/")
    ref = public.resolve_reference("a b.png")
    assert ref.kind is RefKind.URL
    assert ref.value == "http://img.local/a%20b.png"

    with pytest.raises(StorageError):
        public.resolve_reference("missing.png")
