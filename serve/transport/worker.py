"""Worker thread logic for handling individual client connections."""

import dataclasses
import logging
import socket
import ssl
import threading
import time
from dataclasses import dataclass
from typing import Optional

from serve.bootstrap.config import MAX_BODY_BYTES
from serve.domain.correlation_id import CorrelationLoggerAdapter, correlation_scope
from serve.domain.http_types import HttpRequest
from serve.domain.response_builders import (
    bad_request_response,
    entity_too_large_response,
    internal_error_response,
)
from serve.lifecycle.state import ServerLifecycle
from serve.pipeline.io import receive_request, send_response
from serve.pipeline.validation import RequestEntityTooLarge
from serve.transport.context import WorkerContext

WORKER_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("serve.transport.worker"), {}
)

IDLE_POLL_SECONDS = 0.5


def _await_request_bytes(
    client_socket: socket.socket,
    lifecycle: Optional[ServerLifecycle],
    idle_timeout: float,
) -> Optional[bytes]:
    """Wait for the first bytes of the next request on a keep-alive connection.

    Returns None when the server starts draining or the connection stays idle
    for ``idle_timeout`` seconds, and ``b""`` when the client hung up.
    """
    deadline = time.monotonic() + idle_timeout
    try:
        while True:
            if lifecycle is not None and lifecycle.is_draining():
                return None
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            client_socket.settimeout(min(IDLE_POLL_SECONDS, remaining))
            try:
                return client_socket.recv(4096)
            except socket.timeout:
                continue
    finally:
        client_socket.settimeout(idle_timeout)


def _read_request_with_validation(
    client_socket: socket.socket,
    buffer: bytes,
    client_addr_str: str,
) -> tuple[Optional[HttpRequest], bytes, bool]:
    """Read a request from the socket while enforcing the size limits."""

    try:
        request, buffer = receive_request(client_socket, buffer)
    except RequestEntityTooLarge:
        WORKER_LOGGER.warning(
            "Request body size exceeded limit",
            extra={
                "event": "body_size_exceeded",
                "client": client_addr_str,
                "bytes": MAX_BODY_BYTES,
            },
        )
        send_response(client_socket, entity_too_large_response())
        return None, b"", True
    except ValueError:
        WORKER_LOGGER.warning(
            "Malformed request received",
            extra={"event": "malformed_request", "client": client_addr_str},
        )
        send_response(client_socket, bad_request_response())
        return None, b"", True

    if request is None:
        if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
            WORKER_LOGGER.debug(
                "Client disconnected during request",
                extra={"event": "client_disconnected", "client": client_addr_str},
            )
        return None, buffer, True
    return request, buffer, False


def _process_request(
    request: HttpRequest,
    context: WorkerContext,
    client_socket: socket.socket,
) -> bool:
    try:
        response = context.handler(request)
    except OSError as error:
        # Only reached by a bare handler; composed chains answer 500 themselves.
        WORKER_LOGGER.error(
            "Handler failed",
            extra={
                "event": "handler_error",
                "route": request.path,
                "error_type": type(error).__name__,
            },
            exc_info=True,
        )
        response = internal_error_response(request)

    lifecycle = context.lifecycle
    if lifecycle is not None and lifecycle.is_draining():
        response = dataclasses.replace(response, close_connection=True)
    send_response(client_socket, response)
    return response.close_connection


def _prepare_worker(
    context: WorkerContext,
    client_socket: socket.socket,
    current_thread: threading.Thread,
) -> Optional[ServerLifecycle]:
    lifecycle = context.lifecycle
    if lifecycle is not None:
        lifecycle.register_worker(current_thread)
    client_socket.settimeout(context.socket_timeout)
    return lifecycle


@dataclass
class _WorkerResources:
    thread: threading.Thread
    client_socket: socket.socket
    client_addr_str: str


def _cleanup_worker(
    lifecycle: Optional[ServerLifecycle],
    resources: _WorkerResources,
) -> None:
    if lifecycle is not None:
        lifecycle.cleanup_worker(resources.thread)

    try:
        resources.client_socket.shutdown(socket.SHUT_WR)
    except OSError:
        pass
    resources.client_socket.close()

    WORKER_LOGGER.debug(
        "Socket closed",
        extra={"event": "socket_closed", "client": resources.client_addr_str},
    )


def _serve_connection(
    client_socket: socket.socket,
    client_addr_str: str,
    context: WorkerContext,
    lifecycle: Optional[ServerLifecycle],
) -> None:
    buffer = b""
    if isinstance(client_socket, ssl.SSLSocket):
        client_socket.do_handshake()

    while True:
        with correlation_scope():
            if not buffer:
                buffer = _await_request_bytes(
                    client_socket, lifecycle, context.socket_timeout
                )
                if not buffer:
                    if WORKER_LOGGER.logger.isEnabledFor(logging.DEBUG):
                        WORKER_LOGGER.debug(
                            "Idle connection released",
                            extra={
                                "event": "connection_idle",
                                "client": client_addr_str,
                            },
                        )
                    break

            request, buffer, should_terminate = _read_request_with_validation(
                client_socket, buffer, client_addr_str
            )
            if should_terminate or request is None:
                break

            if _process_request(request, context, client_socket):
                break


def handle_client(
    client_socket: socket.socket,
    client_address: tuple[str, int],
    context: WorkerContext,
) -> None:
    """Process requests on a client socket until the connection is closed."""
    current_thread = threading.current_thread()
    lifecycle = _prepare_worker(context, client_socket, current_thread)
    client_addr_str = f"{client_address[0]}:{client_address[1]}"
    resources = _WorkerResources(current_thread, client_socket, client_addr_str)

    try:
        _serve_connection(client_socket, client_addr_str, context, lifecycle)
    except ssl.SSLError as error:
        WORKER_LOGGER.warning(
            "TLS handshake failed",
            extra={
                "event": "tls_error",
                "client": client_addr_str,
                "error": error.reason or str(error),
            },
        )
    except (
        ConnectionError,
        TimeoutError,
        OSError,
        UnicodeDecodeError,
    ) as error:
        WORKER_LOGGER.error(
            "Error handling client connection",
            extra={
                "event": "connection_error",
                "client": client_addr_str,
                "error_type": type(error).__name__,
            },
        )
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Unexpected error in worker",
            extra={
                "event": "worker_error",
                "client": client_addr_str,
                "error_type": type(error).__name__,
                "error": str(error),
            },
            exc_info=True,
        )
    finally:
        _cleanup_worker(lifecycle, resources)
