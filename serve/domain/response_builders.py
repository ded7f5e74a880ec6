"""Pure HTTP response builders."""

from typing import Optional

from serve.domain.http_types import HttpRequest, HttpResponse, should_close

TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"


def _text_response(
    status_line: str,
    message: str,
    request: Optional[HttpRequest],
    extra_headers: Optional[dict[str, str]] = None,
) -> HttpResponse:
    payload = message.encode()
    headers = {"Content-Type": TEXT_CONTENT_TYPE, **(extra_headers or {})}
    close = should_close(request.headers) if request is not None else True
    return HttpResponse(
        status_line,
        headers,
        payload,
        close,
        omit_body=request is not None and request.method == "HEAD",
        content_length=len(payload),
    )


def not_found_response(request: HttpRequest) -> HttpResponse:
    """Return a 404 response reusing the connection preference."""
    return _text_response("HTTP/1.1 404 Not Found", "404 page not found\n", request)


def forbidden_response(request: Optional[HttpRequest] = None) -> HttpResponse:
    """Produce a 403 response honoring the caller's connection preference."""
    return _text_response("HTTP/1.1 403 Forbidden", "403 forbidden\n", request)


def bad_request_response(request: Optional[HttpRequest] = None) -> HttpResponse:
    """Produce a 400 response honoring the caller's connection preference."""
    return _text_response("HTTP/1.1 400 Bad Request", "400 bad request\n", request)


def entity_too_large_response() -> HttpResponse:
    """Produce a 413 response that always closes the connection."""
    return _text_response(
        "HTTP/1.1 413 Payload Too Large", "413 payload too large\n", None
    )


def method_not_allowed_response(
    request: HttpRequest, allowed_methods: set[str]
) -> HttpResponse:
    """Produce a 405 response enumerating the supported HTTP methods."""
    allow_header = ", ".join(sorted(allowed_methods))
    return _text_response(
        "HTTP/1.1 405 Method Not Allowed",
        "405 method not allowed\n",
        request,
        {"Allow": allow_header},
    )


def redirect_response(request: HttpRequest, location: str) -> HttpResponse:
    """Produce a 301 response pointing the client at ``location``."""
    return _text_response(
        "HTTP/1.1 301 Moved Permanently",
        f"Moved Permanently: {location}\n",
        request,
        {"Location": location},
    )


def not_modified_response(
    request: HttpRequest, headers: dict[str, str]
) -> HttpResponse:
    """Produce a bodiless 304 response for a satisfied conditional GET."""
    return HttpResponse(
        "HTTP/1.1 304 Not Modified",
        headers,
        b"",
        should_close(request.headers),
        omit_body=True,
    )


def draining_response() -> HttpResponse:
    """Produce a 503 response indicating the server is draining."""
    return HttpResponse(
        "HTTP/1.1 503 Service Unavailable",
        {"Connection": "close", "Content-Type": TEXT_CONTENT_TYPE},
        b"draining",
        True,
    )


def internal_error_response(request: HttpRequest) -> HttpResponse:
    """Produce a 500 response that closes the connection."""
    response = _text_response(
        "HTTP/1.1 500 Internal Server Error", "500 internal server error\n", request
    )
    response.close_connection = True
    return response
