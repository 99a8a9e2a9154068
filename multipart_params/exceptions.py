from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from typing import Literal

    StreamSection = Literal["headers", "body", "boundary-terminator"]


class FormParserError(ValueError):
    """Base error class for our form parser."""


class ParseError(FormParserError):
    """This exception (or a subclass) is raised when there is an error while
    parsing something.
    """

    #: This is the position in the input stream (counted from the first byte
    #: the parser read) at which the parse error was detected.  It will be -1
    #: if not specified.
    offset = -1


class MultipartParseError(ParseError):
    """This is a specific error that is raised when the MultipartParser detects
    an error while parsing.
    """


class InvalidMultipartStart(MultipartParseError):
    """Raised when the body does not begin with the boundary."""


class UnexpectedEndOfStream(MultipartParseError):
    """Raised when the input stream ends in the middle of a part.

    ``where`` tells which section of the part was being read.
    """

    def __init__(self, message: str, where: StreamSection = "body") -> None:
        super().__init__(message)
        self.where = where


class HeaderTooLarge(MultipartParseError):
    """Raised when a part's header block does not end within the budget."""

    def __init__(self, message: str, max_size: int) -> None:
        super().__init__(message)
        self.max_size = max_size


class PartMissingName(MultipartParseError):
    """Raised when a part's Content-Disposition carries no ``name``."""

    def __init__(self, message: str, headers: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.headers = headers or {}


class InvalidBoundaryTerminator(MultipartParseError):
    """Raised when a boundary is followed by neither CRLF nor ``--``."""


class DecodeError(ParseError):
    """This exception is raised when a field value cannot be decoded - for
    example when a part declares a charset Python does not know.
    """


class MissingBoundaryParameter(FormParserError):
    """The Content-Type header has no ``boundary`` parameter.

    Unlike the other errors this one is not fatal: callers usually treat it
    as "nothing to parse".
    """


class FileError(FormParserError, OSError):
    """Exception class for problems with the storage of uploaded files."""
