"""Socket creation and TLS configuration."""

import logging
import os
import socket
import ssl
import tempfile
from pathlib import Path
from typing import Optional

from serve.bootstrap.config import ServerConfiguration
from serve.domain.correlation_id import CorrelationLoggerAdapter
from serve.security.certificates import (
    CERTIFICATE_FILENAME,
    PRIVATE_KEY_FILENAME,
    CertificateMaterial,
)

SOCKET_LOGGER = CorrelationLoggerAdapter(logging.getLogger("serve.socket"), {})

ACCEPT_TIMEOUT_SECONDS = 0.5
ALPN_PROTOCOLS = ["http/1.1"]


def _new_server_context() -> ssl.SSLContext:
    tls_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    tls_context.minimum_version = ssl.TLSVersion.TLSv1_2
    tls_context.set_alpn_protocols(ALPN_PROTOCOLS)
    return tls_context


def build_tls_context(material: CertificateMaterial) -> ssl.SSLContext:
    """Create a server-side TLS context holding ``material``.

    ``load_cert_chain`` only reads files, so in-memory material is written to a
    private temporary directory that is removed as soon as it is loaded.
    """
    tls_context = _new_server_context()
    if material.persisted:
        tls_context.load_cert_chain(
            material.certificate_path, material.private_key_path
        )
        return tls_context

    with tempfile.TemporaryDirectory(prefix="serve-tls-") as scratch:
        certificate_path = Path(scratch) / CERTIFICATE_FILENAME
        key_path = Path(scratch) / PRIVATE_KEY_FILENAME
        certificate_path.write_bytes(material.certificate_pem)
        key_fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(key_fd, "wb") as key_file:
            key_file.write(material.private_key_pem)
        tls_context.load_cert_chain(certificate_path, key_path)
    return tls_context


def create_server_socket(
    config: ServerConfiguration, tls_context: Optional[ssl.SSLContext] = None
) -> socket.socket:
    """Create and bind the listening socket, optionally wrapping it in TLS.

    The handshake is deferred to the worker thread that owns each accepted
    connection.
    """
    server_socket = socket.create_server((config.host, config.port))
    server_socket.settimeout(ACCEPT_TIMEOUT_SECONDS)
    if tls_context is not None:
        server_socket = tls_context.wrap_socket(
            server_socket, server_side=True, do_handshake_on_connect=False
        )
    SOCKET_LOGGER.debug(
        "Listening socket created",
        extra={
            "event": "socket_created",
            "host": config.host,
            "port": config.port,
            "tls": tls_context is not None,
        },
    )
    return server_socket
