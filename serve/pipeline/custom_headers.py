"""Fixed response headers configured on the command line."""

import dataclasses
from typing import Mapping

from serve.domain.http_types import Handler, HttpRequest, HttpResponse, Middleware


def apply_headers(
    response_headers: dict[str, str], configured: Mapping[str, str]
) -> dict[str, str]:
    """Return ``response_headers`` with every configured header set.

    Names compare case-insensitively; a configured header replaces any header
    of the same name the inner handler produced.
    """
    overridden = {name.lower() for name in configured}
    merged = {
        name: value
        for name, value in response_headers.items()
        if name.lower() not in overridden
    }
    merged.update(configured)
    return merged


def custom_headers(configured: Mapping[str, str]) -> Middleware:
    """Build a step that sets ``configured`` on every response."""
    headers = dict(configured)

    def middleware(handler: Handler) -> Handler:
        def handle(request: HttpRequest) -> HttpResponse:
            response = handler(request)
            return dataclasses.replace(
                response, headers=apply_headers(response.headers, headers)
            )

        return handle

    return middleware
