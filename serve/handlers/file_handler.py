"""Static file serving, the innermost handler of every pipeline."""

import email.utils
import logging
import mimetypes
import os
import urllib.parse
from pathlib import Path
from typing import Iterator, Optional

from serve.bootstrap.config import ALLOWED_METHODS
from serve.domain.correlation_id import CorrelationLoggerAdapter
from serve.domain.http_types import Handler, HttpRequest, HttpResponse, should_close
from serve.domain.response_builders import (
    forbidden_response,
    method_not_allowed_response,
    not_found_response,
    not_modified_response,
    redirect_response,
)
from serve.domain.sandbox import ForbiddenPath, resolve_sandbox_path
from serve.handlers.listing import listing_response
from serve.pipeline.validation import validate_request

FILE_LOGGER = CorrelationLoggerAdapter(logging.getLogger("serve.handlers.file"), {})

INDEX_DOCUMENT = "index.html"
CHUNK_SIZE = 65536


def stream_file(filepath: Path, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """Yield file contents in fixed-size chunks for streaming responses."""
    with open(filepath, "rb") as file_handle:
        while True:
            chunk = file_handle.read(chunk_size)
            if not chunk:
                break
            yield chunk


def _content_type_for_path(filepath: Path) -> str:
    mime_type, _ = mimetypes.guess_type(filepath.as_posix())
    return mime_type or "application/octet-stream"


def _is_not_modified(request: HttpRequest, mtime: float) -> bool:
    header = request.headers.get("if-modified-since")
    if not header:
        return False
    try:
        since = email.utils.parsedate_to_datetime(header)
    except (TypeError, ValueError, IndexError):
        return False
    if since is None or since.tzinfo is None:
        return False
    return int(mtime) <= int(since.timestamp())


def _directory_redirect(request: HttpRequest) -> HttpResponse:
    target = urllib.parse.urlsplit(request.target or request.path)
    location = urllib.parse.urlunsplit(("", "", target.path + "/", target.query, ""))
    return redirect_response(request, location)


def _file_response(request: HttpRequest, resolved_path: Path) -> HttpResponse:
    stat_result = resolved_path.stat()
    headers = {
        "Content-Type": _content_type_for_path(resolved_path),
        "Last-Modified": email.utils.formatdate(stat_result.st_mtime, usegmt=True),
    }
    if _is_not_modified(request, stat_result.st_mtime):
        return not_modified_response(request, headers)

    is_head = request.method == "HEAD"
    if FILE_LOGGER.logger.isEnabledFor(logging.DEBUG):
        FILE_LOGGER.debug(
            "Serving file",
            extra={
                "event": "file_served",
                "path": resolved_path.as_posix(),
                "bytes": stat_result.st_size,
            },
        )
    return HttpResponse(
        "HTTP/1.1 200 OK",
        headers,
        b"",
        should_close(request.headers),
        body_iter=None if is_head else stream_file(resolved_path),
        content_length=stat_result.st_size,
        omit_body=is_head,
    )


def _resolve(request: HttpRequest, directory: str) -> Optional[Path]:
    try:
        return resolve_sandbox_path(directory, request.path)
    except ForbiddenPath:
        FILE_LOGGER.warning(
            "Forbidden path access blocked",
            extra={
                "event": "forbidden_path",
                "path": request.path,
                "method": request.method,
            },
        )
        return None


def file_response(request: HttpRequest, directory: str) -> HttpResponse:
    """Serve the file, index document or listing addressed by the request."""
    invalid = validate_request(request)
    if invalid is not None:
        return invalid
    if request.method not in ALLOWED_METHODS:
        return method_not_allowed_response(request, ALLOWED_METHODS)

    resolved_path = _resolve(request, directory)
    if resolved_path is None:
        return forbidden_response(request)
    if not resolved_path.exists():
        return not_found_response(request)

    if resolved_path.is_dir():
        if not request.path.endswith("/"):
            return _directory_redirect(request)
        index_path = resolved_path / INDEX_DOCUMENT
        if not index_path.is_file():
            if not os.access(resolved_path, os.R_OK | os.X_OK):
                return forbidden_response(request)
            return listing_response(request, resolved_path)
        resolved_path = index_path

    if not resolved_path.is_file():
        return not_found_response(request)
    if not os.access(resolved_path, os.R_OK):
        return forbidden_response(request)
    return _file_response(request, resolved_path)


def static_file_handler(directory: str) -> Handler:
    """Return the base handler serving files below ``directory``."""
    root = str(Path(directory).resolve())

    def handle(request: HttpRequest) -> HttpResponse:
        return file_response(request, root)

    return handle
