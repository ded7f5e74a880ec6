"""Turns handler failures into 500 responses inside the pipeline."""

import logging

from serve.domain.correlation_id import CorrelationLoggerAdapter
from serve.domain.http_types import Handler, HttpRequest, HttpResponse
from serve.domain.response_builders import internal_error_response

ERROR_LOGGER = CorrelationLoggerAdapter(logging.getLogger("serve.pipeline.errors"), {})


def internal_errors(handler: Handler) -> Handler:
    """Wrap ``handler`` so an exception becomes a 500 the outer steps still see.

    Sits innermost, so the access log and the configured headers apply to the
    error response as to any other.
    """

    def handle(request: HttpRequest) -> HttpResponse:
        try:
            return handler(request)
        except Exception as error:  # pylint: disable=broad-except
            ERROR_LOGGER.error(
                "Handler failed",
                extra={
                    "event": "handler_error",
                    "route": request.path,
                    "error_type": type(error).__name__,
                },
                exc_info=True,
            )
            return internal_error_response(request)

    return handle
