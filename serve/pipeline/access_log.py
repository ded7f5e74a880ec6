"""Request logging step."""

import logging
import time

from serve.domain.correlation_id import CorrelationLoggerAdapter
from serve.domain.http_types import Handler, HttpRequest, HttpResponse

ACCESS_LOGGER = CorrelationLoggerAdapter(logging.getLogger("serve.access"), {})


def request_logging(handler: Handler) -> Handler:
    """Wrap ``handler`` so each request's method and target are logged first."""

    def handle(request: HttpRequest) -> HttpResponse:
        route = request.target or request.path
        ACCESS_LOGGER.info(
            "%s %s",
            request.method,
            route,
            extra={
                "event": "request_received",
                "method": request.method,
                "route": route,
            },
        )
        started = time.perf_counter()
        response = handler(request)
        if ACCESS_LOGGER.logger.isEnabledFor(logging.DEBUG):
            ACCESS_LOGGER.debug(
                "Request handled",
                extra={
                    "event": "request_handled",
                    "route": route,
                    "status_code": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 3),
                },
            )
        return response

    return handle
