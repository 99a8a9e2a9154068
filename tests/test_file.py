from __future__ import annotations

import gc
import os
import time
import unittest
import weakref
from io import BytesIO
from pathlib import Path
from unittest.mock import patch

import pytest

from multipart_params import stores
from multipart_params.exceptions import FileError
from multipart_params.stores import DiskStore, File, MemoryStore, default_store


class TestFile(unittest.TestCase):
    def test_in_memory(self) -> None:
        f = File("a.txt", "text/plain", 3, {"content-type": "text/plain"}, data=b"abc")
        self.assertTrue(f.in_memory)
        self.assertIsNone(f.path)
        self.assertEqual(f.read(), b"abc")
        self.assertEqual(f.headers, {"content-type": "text/plain"})

        with f.open() as fh:
            self.assertEqual(fh.read(1), b"a")

    def test_headers_default(self) -> None:
        f = File("a.txt", None, 0, data=b"")
        self.assertEqual(f.headers, {})
        self.assertIsNone(f.content_type)

    def test_equality(self) -> None:
        a = File("a.txt", "text/plain", 3, data=b"abc")
        b = File("a.txt", "text/plain", 3, {"x": "y"}, data=b"abc")
        c = File("a.txt", "text/plain", 3, data=b"abd")
        self.assertEqual(a, b)
        self.assertNotEqual(a, c)
        self.assertNotEqual(a, "abc")

    def test_repr(self) -> None:
        f = File("a.txt", "text/plain", 3, data=b"abc")
        self.assertEqual(repr(f), "File(filename='a.txt', content_type='text/plain', size=3, path=None)")


def test_file_on_disk(tmp_path: Path) -> None:
    path = tmp_path / "upload"
    path.write_bytes(b"on disk")

    f = File("a.bin", None, 7, path=str(path))
    assert not f.in_memory
    assert f.data is None
    assert f.read() == b"on disk"
    assert f == File("a.bin", None, 7, data=b"on disk")


class TestMemoryStore(unittest.TestCase):
    def test_store(self) -> None:
        f = MemoryStore().store("a.txt", "text/plain", BytesIO(b"hello"), {"content-type": "text/plain"})
        self.assertEqual(f.data, b"hello")
        self.assertEqual(f.size, 5)
        self.assertEqual(f.filename, "a.txt")
        self.assertEqual(f.content_type, "text/plain")
        self.assertEqual(f.headers, {"content-type": "text/plain"})

    def test_repr(self) -> None:
        self.assertEqual(repr(MemoryStore()), "MemoryStore()")


class TestDiskStore:
    def make(self, tmp_path: Path, **config: object) -> DiskStore:
        store = DiskStore({"UPLOAD_DIR": str(tmp_path), **config})  # type: ignore[typeddict-item]
        self.stores.append(store)
        return store

    def setup_method(self) -> None:
        self.stores: list[DiskStore] = []

    def teardown_method(self) -> None:
        for store in self.stores:
            store.cleanup()

    def test_store(self, tmp_path: Path) -> None:
        store = self.make(tmp_path)
        f = store.store("a.txt", "text/plain", BytesIO(b"x" * 20000), {})

        assert f.path is not None
        assert os.path.dirname(f.path) == str(tmp_path)
        assert os.path.basename(f.path).startswith("multipart-")
        assert not f.path.endswith(".txt")
        assert f.size == 20000
        assert f.read() == b"x" * 20000
        assert store.files == [f.path]

    def test_reads_in_chunks(self, tmp_path: Path) -> None:
        sizes: list[int] = []

        class Stream(BytesIO):
            def read(self, size: int | None = -1) -> bytes:
                sizes.append(size)  # type: ignore[arg-type]
                return super().read(size)

        store = self.make(tmp_path, CHUNK_SIZE=10)
        f = store.store("a.bin", None, Stream(b"y" * 25), {})
        assert f.read() == b"y" * 25
        assert set(sizes) == {10}
        assert len(sizes) == 4

    def test_keep_extensions(self, tmp_path: Path) -> None:
        store = self.make(tmp_path, UPLOAD_KEEP_EXTENSIONS=True)
        f = store.store("photo.png", "image/png", BytesIO(b"\x89PNG"), {})
        assert f.path is not None
        assert f.path.endswith(".png")

    def test_keep_extensions_ignores_directories(self, tmp_path: Path) -> None:
        store = self.make(tmp_path, UPLOAD_KEEP_EXTENSIONS=True)
        f = store.store("..\\..\\evil/../x.tar.gz", None, BytesIO(b""), {})
        assert f.path is not None
        assert os.path.dirname(f.path) == str(tmp_path)
        assert f.path.endswith(".gz")

    def test_no_extension(self, tmp_path: Path) -> None:
        store = self.make(tmp_path, UPLOAD_KEEP_EXTENSIONS=True)
        f = store.store("README", None, BytesIO(b"readme"), {})
        assert f.read() == b"readme"

    def test_bad_upload_dir(self, tmp_path: Path) -> None:
        store = self.make(tmp_path / "does" / "not" / "exist")
        with pytest.raises(FileError):
            store.store("a.txt", None, BytesIO(b"abc"), {})
        assert store.files == []

    def test_file_error_is_os_error(self, tmp_path: Path) -> None:
        store = self.make(tmp_path / "missing")
        with pytest.raises(OSError):
            store.store("a.txt", None, BytesIO(b"abc"), {})

    def test_cleanup(self, tmp_path: Path) -> None:
        store = self.make(tmp_path)
        paths = [store.store("f%d" % i, None, BytesIO(b"data"), {}).path for i in range(3)]
        assert all(os.path.exists(p) for p in paths)

        assert store.cleanup() == 3
        assert not any(os.path.exists(p) for p in paths)
        assert store.files == []
        assert store.cleanup() == 0

    def test_cleanup_already_removed(self, tmp_path: Path) -> None:
        store = self.make(tmp_path)
        f = store.store("a", None, BytesIO(b"data"), {})
        assert f.path is not None
        os.remove(f.path)

        assert store.cleanup() == 0
        assert store.files == []

    def test_sweep_without_expiry(self, tmp_path: Path) -> None:
        store = self.make(tmp_path)
        store.store("a", None, BytesIO(b"data"), {})
        assert store.sweep() == 0
        assert len(store.files) == 1

    def test_sweep(self, tmp_path: Path) -> None:
        store = self.make(tmp_path, UPLOAD_EXPIRES_IN=60)
        old = store.store("old", None, BytesIO(b"data"), {})

        now = time.monotonic()
        with patch.object(stores.time, "monotonic", return_value=now + 61):
            new = store.store("new", None, BytesIO(b"data"), {})

            # Storing swept the old file, and the new one is not due yet.
            assert old.path is not None and not os.path.exists(old.path)
            assert store.files == [new.path]
            assert store.sweep() == 0

        with patch.object(stores.time, "monotonic", return_value=now + 200):
            assert store.sweep() == 1
        assert store.files == []

    def test_repr(self, tmp_path: Path) -> None:
        store = self.make(tmp_path)
        assert repr(store).startswith("DiskStore(config={")


def test_default_store() -> None:
    store = default_store()
    assert isinstance(store, DiskStore)
    assert default_store() is store


def test_disk_store_can_be_collected(tmp_path: Path) -> None:
    store = DiskStore({"UPLOAD_DIR": str(tmp_path)})
    f = store.store("a.txt", None, BytesIO(b"data"), {})
    ref = weakref.ref(store)

    del store
    gc.collect()
    assert ref() is None

    # The file outlives its store.
    assert f.read() == b"data"


def test_live_stores_cleaned_up_at_exit(tmp_path: Path) -> None:
    store = DiskStore({"UPLOAD_DIR": str(tmp_path)})
    f = store.store("a.txt", None, BytesIO(b"data"), {})
    assert store in stores._live_stores

    stores._cleanup_live_stores()
    assert f.path is not None and not os.path.exists(f.path)
    assert store.files == []
