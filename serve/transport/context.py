"""Context object shared across worker threads."""

from dataclasses import dataclass
from typing import Optional

from serve.bootstrap.config import DEFAULT_SOCKET_TIMEOUT
from serve.domain.http_types import Handler
from serve.lifecycle.state import ServerLifecycle


@dataclass(frozen=True)
class WorkerContext:
    """Dependencies shared across handler threads."""

    handler: Handler
    lifecycle: Optional[ServerLifecycle] = None
    socket_timeout: float = DEFAULT_SOCKET_TIMEOUT
