from __future__ import annotations

import atexit
import logging
import os
import tempfile
import threading
import time
import weakref
from io import BytesIO
from typing import TYPE_CHECKING

from .exceptions import FileError

if TYPE_CHECKING:  # pragma: no cover
    from typing import IO, Any, Protocol, TypedDict

    class SupportsRead(Protocol):
        def read(self, __n: int = ...) -> bytes: ...

    class Store(Protocol):
        """Anything that can persist the body of an uploaded file.

        ``store`` must consume ``stream`` during the call; the stream is
        closed once it returns.  Whatever it returns becomes the value of the
        file's form field.
        """

        def store(
            self, filename: str, content_type: str | None, stream: SupportsRead, headers: dict[str, str]
        ) -> Any: ...

    class DiskStoreConfig(TypedDict, total=False):
        UPLOAD_DIR: str | None
        UPLOAD_KEEP_EXTENSIONS: bool
        UPLOAD_EXPIRES_IN: float | None
        CHUNK_SIZE: int


class File:
    """
    This class describes an uploaded file once a store has persisted it.  The
    payload lives either in memory (``data``) or in a file on disk
    (``path``), depending on which store produced it.
    """

    def __init__(
        self,
        filename: str,
        content_type: str | None,
        size: int,
        headers: dict[str, str] | None = None,
        data: bytes | None = None,
        path: str | None = None,
    ) -> None:
        self._filename = filename
        self._content_type = content_type
        self._size = size
        self._headers = headers or {}
        self._data = data
        self._path = path

    @property
    def filename(self) -> str:
        """
        The file name given in the upload request.
        """
        return self._filename

    @property
    def content_type(self) -> str | None:
        """
        The media type from the part's Content-Type header, if any.
        """
        return self._content_type

    @property
    def size(self) -> int:
        return self._size

    @property
    def headers(self) -> dict[str, str]:
        """
        The raw (lower-cased) headers of the part this file came from.
        """
        return self._headers

    @property
    def data(self) -> bytes | None:
        return self._data

    @property
    def path(self) -> str | None:
        """
        Where the file was saved on disk.  Will return None if it's stored
        in memory.
        """
        return self._path

    @property
    def in_memory(self) -> bool:
        return self._data is not None

    def open(self) -> IO[bytes]:
        """Return a new binary file object positioned at the start of the
        payload.  The caller is responsible for closing it.
        """
        if self._data is not None:
            return BytesIO(self._data)
        if self._path is None:  # pragma: no cover
            raise FileError("File has neither data nor a path")
        return open(self._path, "rb")

    def read(self) -> bytes:
        with self.open() as f:
            return f.read()

    def __eq__(self, other: object) -> bool:
        if isinstance(other, File):
            return (
                self.filename == other.filename
                and self.content_type == other.content_type
                and self.read() == other.read()
            )
        else:
            return NotImplemented

    def __repr__(self) -> str:
        return "{}(filename={!r}, content_type={!r}, size={!r}, path={!r})".format(
            self.__class__.__name__, self.filename, self.content_type, self.size, self.path
        )


class MemoryStore:
    """Keeps uploaded files in memory as ``bytes``.

    There is no size limit; only use this when the request size is bounded
    some other way.
    """

    def store(self, filename: str, content_type: str | None, stream: SupportsRead, headers: dict[str, str]) -> File:
        data = stream.read()
        return File(filename, content_type, len(data), headers, data=data)

    def __repr__(self) -> str:
        return "%s()" % self.__class__.__name__


class DiskStore:
    """
    Streams uploaded files into uniquely named temporary files.  Only one
    chunk of the body is held in memory at a time.

    Every file this store creates is remembered, so it can be removed with
    :meth:`cleanup`, or with :meth:`sweep` once it is older than
    ``UPLOAD_EXPIRES_IN`` seconds.  Stores still alive at interpreter exit
    are cleaned up then; a store that has been garbage collected leaves its
    files to the caller.

    Stores are meant to be long-lived and shared between requests.  Without
    ``UPLOAD_EXPIRES_IN`` the registry only shrinks through :meth:`cleanup`.
    """

    DEFAULT_CONFIG: DiskStoreConfig = {
        "UPLOAD_DIR": None,
        "UPLOAD_KEEP_EXTENSIONS": False,
        "UPLOAD_EXPIRES_IN": None,
        "CHUNK_SIZE": 8192,
    }

    def __init__(self, config: DiskStoreConfig = {}) -> None:
        self.logger = logging.getLogger(__name__)
        self.config: DiskStoreConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)

        # Maps each created path to the monotonic time it was created at.
        self._files: dict[str, float] = {}
        self._lock = threading.Lock()
        _live_stores.add(self)

    def store(self, filename: str, content_type: str | None, stream: SupportsRead, headers: dict[str, str]) -> File:
        if self.config.get("UPLOAD_EXPIRES_IN") is not None:
            self.sweep()

        chunk_size = self.config["CHUNK_SIZE"]
        tmp_file = self._get_disk_file(filename)
        with tmp_file:
            size = 0
            while True:
                chunk = stream.read(chunk_size)
                if not chunk:
                    break
                tmp_file.write(chunk)
                size += len(chunk)

        self.logger.debug("Stored %d bytes of %r in %r", size, filename, tmp_file.name)
        return File(filename, content_type, size, headers, path=tmp_file.name)

    def _get_disk_file(self, filename: str) -> IO[bytes]:
        file_dir = self.config.get("UPLOAD_DIR")
        suffix = None
        if self.config.get("UPLOAD_KEEP_EXTENSIONS"):
            # Never take more than the extension from a client filename.
            ext = os.path.splitext(os.path.basename(filename.replace("\\", "/")))[1]
            suffix = ext or None

        self.logger.info("Creating a temporary file with options: %r", {"suffix": suffix, "dir": file_dir})
        try:
            tmp_file = tempfile.NamedTemporaryFile(prefix="multipart-", suffix=suffix, dir=file_dir, delete=False)
        except OSError:
            self.logger.exception("Error creating named temporary file")
            raise FileError("Error creating named temporary file")

        with self._lock:
            self._files[tmp_file.name] = time.monotonic()
        return tmp_file

    @property
    def files(self) -> list[str]:
        """Paths of the files this store created and has not removed yet."""
        with self._lock:
            return list(self._files)

    def sweep(self) -> int:
        """Remove files older than ``UPLOAD_EXPIRES_IN`` seconds.  Returns the
        number of files removed.
        """
        expires_in = self.config.get("UPLOAD_EXPIRES_IN")
        if expires_in is None:
            return 0

        deadline = time.monotonic() - expires_in
        with self._lock:
            expired = [path for path, created in self._files.items() if created <= deadline]
        return self._remove(expired)

    def cleanup(self) -> int:
        """Remove every file this store created."""
        with self._lock:
            paths = list(self._files)
        return self._remove(paths)

    def _remove(self, paths: list[str]) -> int:
        removed = 0
        for path in paths:
            with self._lock:
                self._files.pop(path, None)
            try:
                os.remove(path)
            except FileNotFoundError:
                continue
            except OSError:
                self.logger.warning("Could not remove temporary file %r", path)
                continue
            self.logger.info("Removed temporary file %r", path)
            removed += 1
        return removed

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(config={self.config!r})"


# Weakly held so that the exit hook does not keep stores alive.
_live_stores: weakref.WeakSet[DiskStore] = weakref.WeakSet()


@atexit.register
def _cleanup_live_stores() -> None:
    for store in list(_live_stores):
        store.cleanup()


_default_store: DiskStore | None = None
_default_store_lock = threading.Lock()


def default_store() -> DiskStore:
    """The process-wide :class:`DiskStore` used when no store is given."""
    global _default_store
    with _default_store_lock:
        if _default_store is None:
            _default_store = DiskStore()
        return _default_store
