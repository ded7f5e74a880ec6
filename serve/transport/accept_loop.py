"""Main connection acceptance loop."""

import logging
import socket
import ssl
import threading
from typing import Optional

from serve.bootstrap.config import ServerConfiguration
from serve.bootstrap.socket_factory import create_server_socket
from serve.domain.correlation_id import CorrelationLoggerAdapter
from serve.domain.http_types import Handler
from serve.domain.response_builders import draining_response
from serve.lifecycle.state import ServerLifecycle
from serve.pipeline.io import send_response
from serve.transport.context import WorkerContext
from serve.transport.worker import handle_client

ACCEPT_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("serve.transport.accept"), {}
)


def _reject_while_draining(client_socket: socket.socket) -> None:
    # A TLS handshake has not happened yet, so only plain sockets get a reply.
    try:
        if not isinstance(client_socket, ssl.SSLSocket):
            send_response(client_socket, draining_response())
    except OSError:
        pass
    finally:
        client_socket.close()


def _handle_accepted_client(
    client_socket: socket.socket,
    client_address: tuple[str, int],
    handler_context: WorkerContext,
) -> None:
    """Hand a newly accepted client connection to its own worker thread."""
    if ACCEPT_LOGGER.logger.isEnabledFor(logging.DEBUG):
        ACCEPT_LOGGER.debug(
            "Client connection accepted",
            extra={
                "event": "client_accepted",
                "client": f"{client_address[0]}:{client_address[1]}",
            },
        )

    thread = threading.Thread(
        target=handle_client,
        args=(client_socket, client_address, handler_context),
        daemon=True,
    )
    thread.start()


def _display_url(config: ServerConfiguration, port: int) -> str:
    host = config.host if config.host not in ("", "0.0.0.0", "::") else "localhost"
    return f"{config.scheme}://{host}:{port}"


def _accept_connections(
    server_socket: socket.socket,
    lifecycle: ServerLifecycle,
    handler_context: WorkerContext,
) -> None:
    while True:
        try:
            client_socket, client_address = server_socket.accept()
        except socket.timeout:
            if lifecycle.should_stop():
                break
            continue
        except OSError as error:
            if lifecycle.should_stop():
                break
            ACCEPT_LOGGER.error(
                "Socket accept failed",
                extra={"event": "accept_error", "error_type": type(error).__name__},
            )
            continue

        if lifecycle.is_draining():
            _reject_while_draining(client_socket)
            continue

        _handle_accepted_client(client_socket, client_address, handler_context)


def run_server(
    config: ServerConfiguration,
    handler: Handler,
    lifecycle: ServerLifecycle,
    tls_context: Optional[ssl.SSLContext] = None,
) -> None:
    """Bind the listener and accept connections until a shutdown is requested.

    Bind failures are recorded on ``lifecycle`` instead of raised, so the
    thread waiting on the lifecycle learns about them.
    """
    lifecycle.mark_starting()
    try:
        server_socket = create_server_socket(config, tls_context)
    except (OSError, ssl.SSLError) as error:
        ACCEPT_LOGGER.critical(
            "Failed to start listener: %s",
            error,
            extra={
                "event": "listen_failed",
                "host": config.host,
                "port": config.port,
                "error": str(error),
            },
        )
        lifecycle.fail(error)
        return

    port = server_socket.getsockname()[1]
    lifecycle.mark_running()
    ACCEPT_LOGGER.info(
        "Serving %s on %s",
        config.directory,
        _display_url(config, port),
        extra={
            "event": "server_listening",
            "host": config.host,
            "port": port,
            "tls": tls_context is not None,
        },
    )

    handler_context = WorkerContext(
        handler=handler,
        lifecycle=lifecycle,
        socket_timeout=config.socket_timeout,
    )

    try:
        _accept_connections(server_socket, lifecycle, handler_context)
    except Exception as error:  # pylint: disable=broad-except
        ACCEPT_LOGGER.critical(
            "Accept loop crashed",
            extra={"event": "accept_loop_crashed", "error_type": type(error).__name__},
            exc_info=True,
        )
        lifecycle.fail(error)
    finally:
        server_socket.close()
        ACCEPT_LOGGER.debug("Listener closed", extra={"event": "listener_closed"})
