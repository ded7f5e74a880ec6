"""Per-request correlation ids carried through logs and X-Request-ID."""

import contextlib
import contextvars
import logging
import re
import uuid
from typing import Any, Iterator, MutableMapping, Optional

LOGGER_PREFIX = "serve."
MAX_CLIENT_ID_LENGTH = 128
# Client-supplied ids end up in log lines and response headers.
CLIENT_ID_PATTERN = re.compile(r"[A-Za-z0-9._:/+=-]+")

_correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "correlation_id", default=None
)
_client_supplied_var: contextvars.ContextVar[bool] = contextvars.ContextVar(
    "client_supplied_correlation_id", default=False
)


def generate_correlation_id() -> str:
    return uuid.uuid4().hex


def get_correlation_id() -> Optional[str]:
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)
    _client_supplied_var.set(False)


def get_client_correlation_id() -> Optional[str]:
    """Return the current id only when the client sent it as X-Request-ID."""
    return _correlation_id_var.get() if _client_supplied_var.get() else None


def adopt_client_correlation_id(value: Optional[str]) -> bool:
    """Use a client's X-Request-ID as the current id when it looks sane.

    Returns whether the value was adopted; rejected values leave the
    generated id in place.
    """
    if not value or len(value) > MAX_CLIENT_ID_LENGTH:
        return False
    if CLIENT_ID_PATTERN.fullmatch(value) is None:
        return False
    set_correlation_id(value)
    _client_supplied_var.set(True)
    return True


@contextlib.contextmanager
def correlation_scope() -> Iterator[str]:
    """Bind a fresh correlation id for the duration of one request."""
    token = _correlation_id_var.set(generate_correlation_id())
    supplied_token = _client_supplied_var.set(False)
    try:
        yield _correlation_id_var.get()
    finally:
        _client_supplied_var.reset(supplied_token)
        _correlation_id_var.reset(token)


class CorrelationLoggerAdapter(logging.LoggerAdapter):
    """Adds ``correlation_id`` and ``component`` to every record's extras.

    The component is the logger name without the ``serve.`` prefix, so
    ``serve.transport.worker`` logs as ``transport.worker``.
    """

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        extra["correlation_id"] = get_correlation_id() or "-"

        name = self.logger.name
        extra["component"] = (
            name[len(LOGGER_PREFIX) :] if name.startswith(LOGGER_PREFIX) else name
        )
        kwargs["extra"] = extra
        return msg, kwargs
