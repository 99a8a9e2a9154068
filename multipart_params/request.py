from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING

from .exceptions import FormParserError, MissingBoundaryParameter
from .multipart import MultipartParser

if TYPE_CHECKING:  # pragma: no cover
    from collections.abc import Callable
    from typing import Any

    from .multipart import MultipartParserConfig
    from .stores import Store

    Request = dict[str, Any]
    Response = dict[str, Any]
    Handler = Callable[[Request], Response]
    ProgressCallback = Callable[[Request, int, "int | None", int], None]

BOUNDARY_RE = re.compile(r'boundary="?([^";,]+)"?', re.IGNORECASE)

logger = logging.getLogger(__name__)


def is_multipart_form(request: Request) -> bool:
    """Returns True if the request carries a ``multipart/form-data`` body."""
    content_type = request.get("content_type")
    if not content_type:
        return False
    return content_type.lower().startswith("multipart/form-data")


def extract_boundary(content_type: str | None) -> str:
    """
    Pulls the ``boundary`` parameter out of a Content-Type header value.

    Raises :class:`~multipart_params.exceptions.MissingBoundaryParameter` if
    there is none.
    """
    match = BOUNDARY_RE.search(content_type or "")
    if match is None:
        raise MissingBoundaryParameter("No boundary parameter in Content-Type %r" % (content_type,))
    return match.group(1)


def multipart_params_request(
    request: Request,
    encoding: str | None = None,
    fallback_encoding: str | None = None,
    store: Store | None = None,
    progress_fn: ProgressCallback | None = None,
    config: MultipartParserConfig = {},
) -> Request:
    """
    Parses the multipart body of ``request`` and returns a new request dict
    with two extra keys:

    - ``multipart_params``: the fields and files found in the body;
    - ``params``: the request's existing ``params`` updated with them.

    The request is a plain dict with ``content_type``, ``body`` (a readable
    binary stream) and optionally ``character_encoding``, ``content_length``
    and ``params``.  Requests that are not ``multipart/form-data`` or have no
    body come back untouched.  A multipart request without a boundary gets
    its params unchanged.

    ``progress_fn`` is called as ``progress_fn(request, bytes_read,
    content_length, item_count)``.  The other options are passed on to
    :class:`~multipart_params.multipart.MultipartParser`; ``fallback_encoding``
    defaults to ``encoding``, then to the request's ``character_encoding``.
    """
    if request.get("body") is None or not is_multipart_form(request):
        return request

    try:
        boundary = extract_boundary(request["content_type"])
    except MissingBoundaryParameter as e:
        logger.warning("%s, nothing to parse", e)
        return {**request, "params": dict(request.get("params") or {})}

    on_progress = None
    if progress_fn is not None:
        content_length = request.get("content_length")

        def on_progress(bytes_read: int, item_count: int) -> None:
            progress_fn(request, bytes_read, content_length, item_count)

    parser = MultipartParser(
        boundary,
        encoding=encoding,
        fallback_encoding=fallback_encoding or encoding or request.get("character_encoding"),
        store=store,
        progress_fn=on_progress,
        config=config,
    )
    multipart_params = parser.parse(request["body"])

    params = dict(request.get("params") or {})
    params.update(multipart_params)
    return {**request, "multipart_params": multipart_params, "params": params}


def wrap_multipart_params(handler: Handler, silent: bool = False, **options: Any) -> Handler:
    """
    Wraps ``handler`` so that it receives requests already run through
    :func:`multipart_params_request` (``options`` are passed on to it).

    If the body cannot be parsed the handler is not called; the error is
    logged, unless ``silent`` is set, and a plain-text 500 response is
    returned instead.
    """

    def handle_multipart_request(request: Request) -> Response:
        try:
            parsed = multipart_params_request(request, **options)
        except FormParserError:
            if not silent:
                logger.exception("Error parsing multipart request")
            return {
                "status": 500,
                "headers": {"Content-Type": "text/plain"},
                "body": "Server error parsing multipart request",
            }
        return handler(parsed)

    return handle_multipart_request
