"""HTTP Input/Output operations."""

import logging
import socket
import urllib.parse
from typing import Optional, Tuple

from serve.bootstrap.config import HEADER_DELIMITER, MAX_BODY_BYTES
from serve.domain.correlation_id import (
    CorrelationLoggerAdapter,
    adopt_client_correlation_id,
    get_client_correlation_id,
)
from serve.domain.http_types import HttpRequest, HttpResponse
from serve.pipeline.validation import RequestEntityTooLarge

IO_LOGGER = CorrelationLoggerAdapter(logging.getLogger("serve.io"), {})

MAX_HEADER_BYTES = 64 * 1024
BODYLESS_STATUS_CODES = {204, 304}


def parse_headers(lines: list[str]) -> dict[str, str]:
    """Convert raw header lines into a lowercase-keyed dictionary."""
    parsed = {}
    for line in lines:
        name, separator, value = line.partition(":")
        if separator and name.strip():
            parsed[name.strip().lower()] = value.strip()
    return parsed


def parse_request_line(request_line: str) -> Tuple[str, str, str]:
    """Parse the method, decoded path and raw target from the request line."""
    try:
        method, target, _ = request_line.split(" ", 2)
    except ValueError as exc:
        raise ValueError("Invalid request line") from exc

    parsed_target = urllib.parse.urlsplit(target)
    return method, urllib.parse.unquote(parsed_target.path), target


def determine_content_length(headers: dict[str, str]) -> int:
    """Validate and return the declared Content-Length for the request."""
    header_value = headers.get("content-length")
    if header_value is None:
        return 0
    try:
        content_length = int(header_value)
    except ValueError as exc:
        raise ValueError("Invalid Content-Length") from exc
    if content_length < 0:
        raise ValueError("Negative Content-Length")
    if content_length > MAX_BODY_BYTES:
        raise RequestEntityTooLarge
    return content_length


def receive_request(
    client_socket: socket.socket, buffer: bytes
) -> Tuple[Optional[HttpRequest], bytes]:
    """Read bytes from the socket until a complete request is available."""
    while HEADER_DELIMITER not in buffer:
        if len(buffer) > MAX_HEADER_BYTES:
            raise ValueError("Request header block too large")
        chunk = client_socket.recv(4096)
        if not chunk:
            return None, b""
        buffer += chunk

    header_block, remainder = buffer.split(HEADER_DELIMITER, 1)
    header_lines = header_block.decode("iso-8859-1").split("\r\n")
    method, path, target = parse_request_line(header_lines[0])
    headers = parse_headers(header_lines[1:])

    adopt_client_correlation_id(headers.get("x-request-id"))

    content_length = determine_content_length(headers)

    while len(remainder) < content_length:
        chunk = client_socket.recv(4096)
        if not chunk:
            return None, b""
        remainder += chunk

    body = remainder[:content_length]
    leftover = remainder[content_length:]
    IO_LOGGER.debug(
        "Parsed request",
        extra={"event": "request_parsed", "method": method, "path": path},
    )
    return HttpRequest(method, path, headers, body, target), leftover


def _close_body_iter(response: HttpResponse) -> None:
    close = getattr(response.body_iter, "close", None)
    if close is not None:
        close()


def send_response(client_socket: socket.socket, response: HttpResponse) -> None:
    """Serialize and send the HTTP response over the socket."""
    headers = dict(response.headers)

    client_correlation_id = get_client_correlation_id()
    if client_correlation_id:
        headers["X-Request-ID"] = client_correlation_id

    bodyless_status = response.status_code in BODYLESS_STATUS_CODES
    if bodyless_status:
        headers.pop("Content-Length", None)
    elif response.use_chunked:
        headers.pop("Content-Length", None)
        headers["Transfer-Encoding"] = "chunked"
    elif response.content_length is not None:
        headers["Content-Length"] = str(response.content_length)
    else:
        headers["Content-Length"] = str(len(response.body))
    if response.close_connection:
        headers["Connection"] = "close"
    header_lines = [response.status_line]
    header_lines.extend(f"{name}: {value}" for name, value in headers.items())
    header_block = "\r\n".join(header_lines).encode("iso-8859-1") + b"\r\n\r\n"

    body_iter = response.body_iter
    if body_iter is None and response.use_chunked:
        body_iter = [response.body]

    if response.omit_body or bodyless_status:
        client_socket.sendall(header_block)
        _close_body_iter(response)
    elif body_iter is not None:
        client_socket.sendall(header_block)
        try:
            for chunk in body_iter:
                if not chunk:
                    continue
                if response.use_chunked:
                    size_line = f"{len(chunk):X}\r\n".encode()
                    client_socket.sendall(size_line + chunk + b"\r\n")
                else:
                    client_socket.sendall(chunk)
        finally:
            _close_body_iter(response)
        if response.use_chunked:
            client_socket.sendall(b"0\r\n\r\n")
    else:
        client_socket.sendall(header_block + response.body)
    IO_LOGGER.debug(
        "Sent response",
        extra={
            "event": "response_sent",
            "status_code": response.status_code,
            "use_chunked": response.use_chunked,
        },
    )
