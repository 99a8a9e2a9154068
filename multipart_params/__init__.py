__version__ = "0.1.0"

from .multipart import (
    ContentType,
    MultipartParser,
    PushbackReader,
    iter_until,
    parse_content_disposition,
    parse_content_type,
    parse_multipart,
    read_part_headers,
    read_until,
)
from .request import extract_boundary, is_multipart_form, multipart_params_request, wrap_multipart_params
from .stores import DiskStore, File, MemoryStore, default_store

__all__ = (
    "ContentType",
    "DiskStore",
    "File",
    "MemoryStore",
    "MultipartParser",
    "PushbackReader",
    "default_store",
    "extract_boundary",
    "is_multipart_form",
    "iter_until",
    "multipart_params_request",
    "parse_content_disposition",
    "parse_content_type",
    "parse_multipart",
    "read_part_headers",
    "read_until",
    "wrap_multipart_params",
)
