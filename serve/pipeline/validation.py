"""Request validation utilities for the file server."""

from typing import Optional

from serve.domain.http_types import HttpRequest, HttpResponse
from serve.domain.response_builders import bad_request_response


class RequestEntityTooLarge(Exception):
    """Raised when a request body exceeds configured limits."""


def validate_request(request: HttpRequest) -> Optional[HttpResponse]:
    """Return a 400 response for paths no file lookup should see.

    Parent segments are left to the sandbox, which answers them with 403.
    """
    if not request.path.startswith("/") or "\x00" in request.path:
        return bad_request_response(request)
    return None
