from __future__ import annotations

import logging
import re
from enum import IntEnum
from io import RawIOBase
from typing import TYPE_CHECKING, NamedTuple

from .exceptions import (
    DecodeError,
    HeaderTooLarge,
    InvalidBoundaryTerminator,
    InvalidMultipartStart,
    PartMissingName,
    UnexpectedEndOfStream,
)
from .stores import default_store

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable, Iterator
    from typing import Any, Protocol, TypedDict

    from .stores import Store

    class SupportsRead(Protocol):
        def read(self, __n: int) -> bytes: ...

    class MultipartParserConfig(TypedDict, total=False):
        CHUNK_SIZE: int
        MAX_HEADER_SIZE: int

    OnProgress = Callable[[int, int], None]


class MultipartState(IntEnum):
    """States of the multipart parser.

    PREAMBLE → PART_HEADERS → PART_BODY → BOUNDARY_TERMINATOR, then back to
    PART_HEADERS after a ``CRLF`` or on to END after ``--``.
    """

    PREAMBLE = 0
    PART_HEADERS = 1
    PART_BODY = 2
    BOUNDARY_TERMINATOR = 3
    END = 4


DEFAULT_CHUNK_SIZE = 8192
DEFAULT_MAX_HEADER_SIZE = 8192

CRLF = b"\r\n"
HEADER_TERMINATOR = b"\r\n\r\n"
DOUBLE_HYPHEN = b"--"

LINE_SPLIT_RE = re.compile(r"\r?\n")
HEADER_SPLIT_RE = re.compile(r":\s*")
# Leading quote, trailing quote and every backslash.
UNQUOTE_RE = re.compile(r'^"|"$|\\')

logger = logging.getLogger(__name__)


class ContentType(NamedTuple):
    media_type: str
    charset: str | None = None


def parse_content_type(value: str | None) -> ContentType | None:
    """
    Parses a part's Content-Type header into its media type and, when one of
    the parameters is ``charset=...``, its charset.  Returns None if there is
    no header.
    """
    if value is None:
        return None

    segments = value.split(";")
    charset = None
    for segment in segments[1:]:
        segment = segment.strip()
        if segment.lower().startswith("charset="):
            charset = segment.split("=", 1)[1].strip().strip('"') or None
            break

    return ContentType(segments[0].strip(), charset)


def parse_content_disposition(value: str | None) -> dict[str, str] | None:
    """
    Parses a Content-Disposition header into a dict of its parameters, for
    example ``{"name": "file", "filename": "a.txt"}``.  Anything that is not
    ``form-data`` gives an empty dict.
    """
    if value is None:
        return None

    segments = [segment.strip() for segment in value.split(";")]
    if segments[0] != "form-data":
        return {}

    params: dict[str, str] = {}
    for segment in segments[1:]:
        key, sep, param = segment.partition("=")
        if not sep:
            continue
        params[key.strip()] = UNQUOTE_RE.sub("", param.strip())
    return params


def _decode(data: bytes, encoding: str) -> str:
    try:
        return data.decode(encoding, errors="replace")
    except LookupError:
        msg = "Unknown character encoding %r" % (encoding,)
        logger.warning(msg)
        raise DecodeError(msg)


class PushbackReader:
    """
    Wraps a readable binary stream so that bytes read too far can be pushed
    back with :meth:`unread`.  Pushed-back bytes are returned by the next
    reads before anything new is taken from the stream, so a read may come
    back short.  An empty result always means the stream is exhausted.
    """

    def __init__(self, stream: SupportsRead) -> None:
        self._stream = stream
        self._pushback = bytearray()
        self._position = 0

    def read(self, size: int = DEFAULT_CHUNK_SIZE) -> bytes:
        if size <= 0:
            return b""

        if self._pushback:
            data = bytes(self._pushback[:size])
            del self._pushback[:size]
        else:
            data = self._stream.read(size) or b""

        self._position += len(data)
        return data

    def unread(self, data: bytes) -> None:
        if not data:
            return
        self._pushback[:0] = data
        self._position -= len(data)

    def tell(self) -> int:
        """
        Number of bytes handed out so far, minus those pushed back.
        """
        return self._position

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(stream={self._stream!r}, position={self._position!r})"


def _read_exactly(reader: PushbackReader, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = reader.read(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


def _skip_crlf(reader: PushbackReader) -> bool:
    """Consume a CRLF if the reader is positioned on one."""
    first = reader.read(1)
    if first != b"\r":
        reader.unread(first)
        return False

    second = reader.read(1)
    if second != b"\n":
        reader.unread(first + second)
        return False
    return True


def _matches_across(pending: bytes, chunk: bytes, start: int, boundary: bytes) -> bool:
    # Compare as if pending + chunk were one buffer, without building it.
    in_pending = len(pending) - start
    if pending[start:] != boundary[:in_pending]:
        return False
    return chunk[: len(boundary) - in_pending] == boundary[in_pending:]


def iter_until(
    reader: PushbackReader,
    boundary: bytes,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progress: Callable[[int], None] | None = None,
) -> Iterator[bytes]:
    """
    Reads from ``reader`` until ``boundary`` is found, yielding every byte
    that precedes it, in order, in one or more non-empty chunks.  Once the
    generator is exhausted the reader is positioned right after the
    boundary.

    The last ``len(boundary) - 1`` bytes of each read are held back until the
    next read proves whether they start a boundary.  If the stream ends
    first, whatever was held back is yielded and
    :class:`~multipart_params.exceptions.UnexpectedEndOfStream` is raised.

    ``progress``, when given, is called after every read with the number of
    bytes read so far.
    """
    boundary_length = len(boundary)
    if boundary_length == 0:
        raise ValueError("boundary must not be empty")

    first_byte = boundary[0]
    pending = b""
    consumed = 0

    while True:
        chunk = reader.read(chunk_size)
        if not chunk:
            if pending:
                yield pending
            msg = "Stream ended before boundary %r was found" % (boundary,)
            logger.warning(msg)
            e = UnexpectedEndOfStream(msg, "body")
            e.offset = reader.tell()
            raise e

        consumed += len(chunk)
        if progress is not None:
            progress(consumed)

        pending_length = len(pending)
        window_length = pending_length + len(chunk)

        # Position of the match inside the window pending + chunk.
        found = -1
        if pending_length and window_length >= boundary_length:
            for start in range(pending_length):
                if pending[start] == first_byte and _matches_across(pending, chunk, start, boundary):
                    found = start
                    break

        if found < 0:
            index = chunk.find(boundary)
            if index >= 0:
                found = pending_length + index

        if found >= 0:
            reader.unread(chunk[found + boundary_length - pending_length :])
            if found <= pending_length:
                if found:
                    yield pending[:found]
            else:
                if pending:
                    yield pending
                yield chunk[: found - pending_length]
            return

        # No match: everything but the last boundary_length - 1 bytes of the
        # window is safe to hand out.
        keep = min(boundary_length - 1, window_length)
        cut = window_length - keep
        if cut <= pending_length:
            if cut:
                yield pending[:cut]
            pending = pending[cut:] + chunk
        else:
            if pending:
                yield pending
            split = cut - pending_length
            yield chunk[:split]
            pending = chunk[split:]


def read_until(
    reader: PushbackReader,
    boundary: bytes,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    progress: Callable[[int], None] | None = None,
) -> bytes:
    """Like :func:`iter_until`, but returns everything before the boundary
    as a single bytes object.
    """
    return b"".join(iter_until(reader, boundary, chunk_size, progress))


def _strip_trailing_crlf(chunks: Iterator[bytes]) -> Iterator[bytes]:
    # Hold back the last two bytes until the chunks run out, then drop them
    # if they are exactly one CRLF.
    tail = b""
    for chunk in chunks:
        if tail:
            chunk = tail + chunk
        tail = chunk[-2:]
        if len(chunk) > 2:
            yield chunk[:-2]

    if tail and tail != CRLF:
        yield tail


def read_part_headers(
    reader: PushbackReader,
    encoding: str = "utf-8",
    max_size: int = DEFAULT_MAX_HEADER_SIZE,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> dict[str, str]:
    """
    Reads one part's header block, up to and including the blank line that
    ends it, and returns the headers as a dict keyed by lower-cased name.
    Lines without a colon are skipped, and a repeated header keeps its last
    value.  Anything read past the blank line is pushed back.
    """
    block = bytearray()
    while True:
        chunk = reader.read(chunk_size)
        if not chunk:
            msg = "Stream ended while reading part headers"
            logger.warning(msg)
            e = UnexpectedEndOfStream(msg, "headers")
            e.offset = reader.tell()
            raise e

        search_from = max(0, len(block) - 3)
        block += chunk

        end = block.find(HEADER_TERMINATOR, search_from)
        if end >= 0:
            if end > max_size:
                break
            reader.unread(bytes(block[end + len(HEADER_TERMINATOR) :]))
            del block[end:]
            break

        if len(block) - 3 > max_size:
            break

    if len(block) > max_size:
        msg = "Part header block exceeds %d bytes" % (max_size,)
        logger.warning(msg)
        e = HeaderTooLarge(msg, max_size)
        e.offset = reader.tell()
        raise e

    headers: dict[str, str] = {}
    for line in LINE_SPLIT_RE.split(_decode(bytes(block), encoding)):
        pieces = HEADER_SPLIT_RE.split(line, maxsplit=1)
        if len(pieces) != 2:
            if line:
                logger.debug("Skipping malformed header line %r", line)
            continue
        headers[pieces[0].lower()] = pieces[1]
    return headers


class PartStream(RawIOBase):
    """
    Read-only binary file object over an iterator of byte chunks.  File
    parts are handed to the store as one of these, so the body is read from
    the request while the store consumes it.
    """

    def __init__(self, chunks: Iterator[bytes]) -> None:
        super().__init__()
        self._chunks = chunks
        self._buffer = b""
        self._pos = 0

    def readable(self) -> bool:
        return True

    def readinto(self, b: Any) -> int:
        if self.closed:
            raise ValueError("I/O operation on closed stream")

        while self._pos >= len(self._buffer):
            try:
                self._buffer = next(self._chunks)
            except StopIteration:
                return 0
            self._pos = 0

        n = min(len(b), len(self._buffer) - self._pos)
        b[:n] = self._buffer[self._pos : self._pos + n]
        self._pos += n
        return n


def _add_value(params: dict[str, Any], name: str, value: Any) -> None:
    if name not in params:
        params[name] = value
    elif isinstance(params[name], list):
        params[name].append(value)
    else:
        params[name] = [params[name], value]


class MultipartParser:
    """
    This class parses a ``multipart/form-data`` body read from a stream into
    a dict mapping each field name to its value.  Fields become ``str``; file
    parts (those with a ``filename``) are given to ``store`` and whatever it
    returns becomes their value.  A name sent more than once maps to a list
    of its values, in the order they arrived.

    :param boundary: The boundary from the request's Content-Type header,
                     without the leading ``--``.

    :param encoding: Forces the character encoding used to decode fields,
                     overriding any charset a part declares.

    :param fallback_encoding: Used for fields without a declared charset, and
                              for part headers.  Defaults to UTF-8.

    :param store: Where file parts go.  Defaults to the shared
                  :class:`~multipart_params.stores.DiskStore`.

    :param progress_fn: Called as ``progress_fn(bytes_read, item_count)``
                        after each read of a part body, with the bytes read
                        for the current part so far and ``1`` if the part is
                        a file, ``0`` otherwise.

    :param config: Overrides for :attr:`DEFAULT_CONFIG`.
    """

    DEFAULT_CONFIG: MultipartParserConfig = {
        "CHUNK_SIZE": DEFAULT_CHUNK_SIZE,
        "MAX_HEADER_SIZE": DEFAULT_MAX_HEADER_SIZE,
    }

    def __init__(
        self,
        boundary: bytes | str,
        encoding: str | None = None,
        fallback_encoding: str | None = None,
        store: Store | None = None,
        progress_fn: OnProgress | None = None,
        config: MultipartParserConfig = {},
    ) -> None:
        self.logger = logging.getLogger(__name__)

        if isinstance(boundary, str):
            boundary = boundary.encode("latin-1")
        if not boundary:
            raise ValueError("boundary must not be empty")
        self.boundary = DOUBLE_HYPHEN + boundary

        self.encoding = encoding
        self.fallback_encoding = fallback_encoding or "utf-8"
        self.store = store
        self.progress_fn = progress_fn

        self.config: MultipartParserConfig = self.DEFAULT_CONFIG.copy()
        self.config.update(config)

        self.state = MultipartState.PREAMBLE

    def parse(self, stream: SupportsRead) -> dict[str, Any]:
        reader = stream if isinstance(stream, PushbackReader) else PushbackReader(stream)
        chunk_size = self.config["CHUNK_SIZE"]
        max_header_size = self.config["MAX_HEADER_SIZE"]

        params: dict[str, Any] = {}
        headers: dict[str, str] = {}
        name = ""
        filename: str | None = None
        content_type: ContentType | None = None
        value: Any = None

        state = MultipartState.PREAMBLE
        self.state = state
        while state != MultipartState.END:
            if state == MultipartState.PREAMBLE:
                self._skip_preamble(reader)

                # "--boundary--" right away is a form without any parts.
                marker = _read_exactly(reader, 2)
                if marker == DOUBLE_HYPHEN:
                    _skip_crlf(reader)
                    state = MultipartState.END
                else:
                    reader.unread(marker)
                    _skip_crlf(reader)
                    state = MultipartState.PART_HEADERS

            elif state == MultipartState.PART_HEADERS:
                headers = read_part_headers(reader, self.fallback_encoding, max_header_size, chunk_size)
                disposition = parse_content_disposition(headers.get("content-disposition")) or {}
                content_type = parse_content_type(headers.get("content-type"))

                if "name" not in disposition:
                    msg = "Part is missing a name in its Content-Disposition header"
                    self.logger.warning(msg)
                    e = PartMissingName(msg, headers)
                    e.offset = reader.tell()
                    raise e

                name = disposition["name"]
                filename = disposition.get("filename")
                self.logger.debug("Parsed headers of part %r (filename=%r)", name, filename)
                state = MultipartState.PART_BODY

            elif state == MultipartState.PART_BODY:
                value = self._read_part_body(reader, headers, filename, content_type)
                state = MultipartState.BOUNDARY_TERMINATOR

            elif state == MultipartState.BOUNDARY_TERMINATOR:
                marker = _read_exactly(reader, 2)
                if marker == DOUBLE_HYPHEN:
                    _skip_crlf(reader)
                    next_state = MultipartState.END
                elif marker == CRLF:
                    next_state = MultipartState.PART_HEADERS
                elif not marker:
                    msg = "Stream ended right after the boundary of part %r" % (name,)
                    self.logger.warning(msg)
                    e = UnexpectedEndOfStream(msg, "boundary-terminator")
                    e.offset = reader.tell()
                    raise e
                else:
                    reader.unread(marker)
                    msg = "Expected CRLF or -- after the boundary of part %r, got %r" % (name, marker)
                    self.logger.warning(msg)
                    e = InvalidBoundaryTerminator(msg)
                    e.offset = reader.tell()
                    raise e

                _add_value(params, name, value)
                state = next_state

            else:  # pragma: no cover (error case)
                raise AssertionError("Reached an unknown state %d" % (state,))

            self.state = state

        return params

    def _skip_preamble(self, reader: PushbackReader) -> None:
        try:
            for chunk in iter_until(reader, self.boundary, self.config["CHUNK_SIZE"]):
                msg = "Expected boundary %r at the start of the body, found %r" % (
                    self.boundary,
                    chunk[: len(self.boundary)],
                )
                self.logger.warning(msg)
                e = InvalidMultipartStart(msg)
                e.offset = 0
                raise e
        except UnexpectedEndOfStream:
            msg = "Stream ended before the first boundary %r" % (self.boundary,)
            self.logger.warning(msg)
            e = InvalidMultipartStart(msg)
            e.offset = reader.tell()
            raise e from None

    def _read_part_body(
        self,
        reader: PushbackReader,
        headers: dict[str, str],
        filename: str | None,
        content_type: ContentType | None,
    ) -> Any:
        progress = None
        if self.progress_fn is not None:
            progress_fn = self.progress_fn
            item_count = 0 if filename is None else 1

            def progress(bytes_read: int) -> None:
                progress_fn(bytes_read, item_count)

        chunks = _strip_trailing_crlf(iter_until(reader, self.boundary, self.config["CHUNK_SIZE"], progress))

        if filename is None:
            data = b"".join(chunks)
            charset = self.encoding or (content_type and content_type.charset) or self.fallback_encoding
            return _decode(data, charset)

        store = self.store if self.store is not None else default_store()
        stream = PartStream(chunks)
        try:
            value = store.store(filename, content_type.media_type if content_type else None, stream, headers)
        finally:
            stream.close()

        # The store may stop early; the rest of the body still has to be
        # scanned so the reader ends up past the boundary.
        for _ in chunks:
            pass

        self.logger.debug("Stored file %r with %r", filename, store)
        return value

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(boundary={self.boundary!r})"


def parse_multipart(stream: SupportsRead, boundary: bytes | str, **options: Any) -> dict[str, Any]:
    """
    Parses a ``multipart/form-data`` body in one call.  ``options`` are the
    keyword arguments of :class:`MultipartParser`.

    .. code-block:: python

        params = parse_multipart(environ["wsgi.input"], boundary, store=MemoryStore())
    """
    return MultipartParser(boundary, **options).parse(stream)
