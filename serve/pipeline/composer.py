"""Composition of the request pipeline around the static file handler.

Steps are listed outermost first and folded over the base handler once at
startup: request logging wraps everything, then custom headers, then gzip
compression. When any of them is on, an error step sits next to the file
handler so failures still pass through the outer steps as 500 responses.
The resulting callable is shared read-only by every worker thread.
"""

import functools
import logging
from typing import Optional, Sequence

from serve.bootstrap.config import ServerConfiguration
from serve.domain.correlation_id import CorrelationLoggerAdapter
from serve.domain.http_types import Handler, Middleware
from serve.handlers.file_handler import static_file_handler
from serve.pipeline.access_log import request_logging
from serve.pipeline.compression import gzip_compression
from serve.pipeline.custom_headers import custom_headers
from serve.pipeline.error_handling import internal_errors

COMPOSER_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("serve.pipeline.composer"), {}
)


def pipeline_steps(config: ServerConfiguration) -> list[tuple[str, Middleware]]:
    """Return the enabled steps, outermost first, paired with their names."""
    steps: list[tuple[str, Middleware]] = []
    if config.logging:
        steps.append(("logging", request_logging))
    if config.headers:
        steps.append(("custom_headers", custom_headers(config.headers)))
    if config.gzip:
        steps.append(("gzip", gzip_compression))
    if steps:
        steps.append(("errors", internal_errors))
    return steps


def compose(base: Handler, steps: Sequence[Middleware]) -> Handler:
    """Fold ``steps`` (outermost first) around ``base``."""
    return functools.reduce(lambda inner, step: step(inner), reversed(steps), base)


def build_handler(
    config: ServerConfiguration, base: Optional[Handler] = None
) -> Handler:
    """Build the single handler serving every request for ``config``."""
    if base is None:
        base = static_file_handler(str(config.directory))
    steps = pipeline_steps(config)
    COMPOSER_LOGGER.debug(
        "Request pipeline built",
        extra={"event": "pipeline_built", "steps": [name for name, _ in steps]},
    )
    return compose(base, [step for _, step in steps])
