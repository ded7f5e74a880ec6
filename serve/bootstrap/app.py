"""Process entry point: build everything once, serve, then drain on a signal."""

import logging
import signal
import ssl
import sys
import threading
from typing import Optional

from serve.bootstrap.config import (
    ConfigurationError,
    ServerConfiguration,
    build_configuration,
    parse_cli_args,
)
from serve.bootstrap.logging_setup import configure_logging
from serve.bootstrap.socket_factory import build_tls_context
from serve.domain.correlation_id import CorrelationLoggerAdapter
from serve.lifecycle.state import ServerLifecycle
from serve.pipeline.composer import build_handler
from serve.security.certificates import (
    ProvisioningError,
    load_certificate,
    provision,
)
from serve.transport.accept_loop import run_server

SERVER_LOGGER = CorrelationLoggerAdapter(logging.getLogger("serve.server"), {})

EXIT_OK = 0
EXIT_FAILURE = 1
STOP_POLL_SECONDS = 0.5


def _prepare_tls(config: ServerConfiguration) -> ssl.SSLContext:
    material = provision(config.certificate_directory, config.persist_certificate)
    certificate = load_certificate(material)
    SERVER_LOGGER.info(
        "Certificate ready",
        extra={
            "event": "certificate_ready",
            "persist": material.persisted,
            "certificate_path": (
                material.certificate_path.as_posix()
                if material.certificate_path
                else None
            ),
            "expires": certificate.not_valid_after_utc.isoformat(),
        },
    )
    return build_tls_context(material)


def _install_signal_handlers(lifecycle: ServerLifecycle) -> None:
    def shutdown_handler(signum: int, _frame) -> None:
        SERVER_LOGGER.info(
            "Received shutdown signal",
            extra={"event": "signal_received", "signal": signum},
        )
        lifecycle.begin_draining()

    signal.signal(signal.SIGTERM, shutdown_handler)
    signal.signal(signal.SIGINT, shutdown_handler)


def _drain(
    config: ServerConfiguration,
    lifecycle: ServerLifecycle,
    listener: threading.Thread,
) -> bool:
    listener.join()
    SERVER_LOGGER.info(
        "Stopping.",
        extra={
            "event": "shutdown_waiting",
            "grace_seconds": config.shutdown_grace_seconds,
            "remaining_workers": lifecycle.active_worker_count(),
        },
    )
    drained = lifecycle.wait_for_workers(config.shutdown_grace_seconds)
    lifecycle.mark_stopped()
    return drained


def serve(config: ServerConfiguration) -> int:
    """Run the server described by ``config`` and return the exit status."""
    handler = build_handler(config)

    tls_context: Optional[ssl.SSLContext] = None
    if config.secure:
        try:
            tls_context = _prepare_tls(config)
        except (ProvisioningError, ssl.SSLError) as error:
            SERVER_LOGGER.critical(
                "Unable to prepare TLS: %s",
                error,
                extra={"event": "tls_setup_failed", "error": str(error)},
            )
            return EXIT_FAILURE

    lifecycle = ServerLifecycle()
    _install_signal_handlers(lifecycle)

    listener = threading.Thread(
        target=run_server,
        args=(config, handler, lifecycle, tls_context),
        name="serve-listener",
        daemon=True,
    )
    listener.start()

    while not lifecycle.wait_for_stop(STOP_POLL_SECONDS):
        pass

    if lifecycle.failure is not None:
        listener.join()
        return EXIT_FAILURE

    if not _drain(config, lifecycle, listener):
        SERVER_LOGGER.error(
            "Connections still open after grace period",
            extra={"event": "shutdown_incomplete"},
        )
        return EXIT_FAILURE

    SERVER_LOGGER.info("Server shutdown complete", extra={"event": "server_stopped"})
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> int:
    """Parse arguments, configure logging and serve until told to stop."""
    args = parse_cli_args(sys.argv[1:] if argv is None else argv)
    configure_logging(
        args.log_level, args.log_destination, use_json=args.log_format == "json"
    )

    try:
        config = build_configuration(args)
    except ConfigurationError as error:
        SERVER_LOGGER.critical(
            "Invalid configuration: %s",
            error,
            extra={"event": "configuration_invalid", "error": str(error)},
        )
        return EXIT_FAILURE

    SERVER_LOGGER.info(
        "Starting file server",
        extra={
            "event": "server_starting",
            "directory": config.directory.as_posix(),
            "host": config.host,
            "port": config.port,
            "tls": config.secure,
            "gzip": config.gzip,
            "access_log": config.logging,
            "custom_headers": len(config.headers),
            "socket_timeout": config.socket_timeout,
            "log_level": config.log_level,
            "log_destination": config.log_destination,
        },
    )
    return serve(config)


if __name__ == "__main__":
    sys.exit(main())
