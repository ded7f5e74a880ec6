"""Server configuration and CLI argument parsing."""

import argparse
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from serve import __version__


class ConfigurationError(Exception):
    """Raised when process arguments cannot form a valid configuration."""


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value is not None else default


MAX_BODY_BYTES = _env_int("SERVE_MAX_BODY_BYTES", 1024 * 1024)
DEFAULT_PORT = 8080
DEFAULT_SOCKET_TIMEOUT = _env_int("SERVE_SOCKET_TIMEOUT", 60)
SHUTDOWN_GRACE_SECONDS = 5
DEFAULT_CERT_DIR_NAME = ".serve"

HEADER_DELIMITER = b"\r\n\r\n"
ALLOWED_METHODS = {"GET", "HEAD"}
LOG_FORMATS = ("text", "json")


def default_certificate_directory() -> Path:
    """Return ``~/.serve``, where persisted certificates live by default."""
    return Path.home() / DEFAULT_CERT_DIR_NAME


@dataclass(frozen=True)
class ServerConfiguration:
    """Immutable settings built once from the process arguments."""

    # pylint: disable=too-many-instance-attributes
    directory: Path = Path(".")
    port: int = DEFAULT_PORT
    host: str = ""
    gzip: bool = False
    logging: bool = False
    secure: bool = False
    headers: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    persist_certificate: bool = False
    certificate_directory: Path = field(default_factory=default_certificate_directory)
    socket_timeout: int = DEFAULT_SOCKET_TIMEOUT
    shutdown_grace_seconds: int = SHUTDOWN_GRACE_SECONDS
    log_level: str = "INFO"
    log_destination: str = "stdout"
    log_format: str = "text"

    @property
    def scheme(self) -> str:
        """URL scheme the listener speaks."""
        return "https" if self.secure else "http"


def parse_header_flag(raw: str) -> tuple[str, str]:
    """Split a ``Name: Value`` flag into a trimmed name and value."""
    name, separator, value = raw.partition(":")
    if not separator:
        raise ConfigurationError(f"Invalid header: {raw}")
    name = name.strip()
    value = value.strip()
    if not name or any(char in name for char in " \t"):
        raise ConfigurationError(f"Invalid header name: {raw}")
    if any(char in raw for char in "\r\n"):
        raise ConfigurationError(f"Invalid header: {raw!r} contains a line break")
    try:
        value.encode("iso-8859-1")
    except UnicodeEncodeError as exc:
        raise ConfigurationError(f"Invalid header value: {raw}") from exc
    return name, value


def parse_header_flags(raw_headers: Optional[Iterable[str]]) -> Mapping[str, str]:
    """Turn repeated ``--header`` flags into a read-only mapping.

    A later flag for the same name replaces the earlier value.
    """
    parsed: dict[str, str] = {}
    for raw in raw_headers or ():
        name, value = parse_header_flag(raw)
        parsed[name] = value
    return MappingProxyType(parsed)


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Return parsed CLI arguments for server configuration."""
    parser = argparse.ArgumentParser(
        prog="serve",
        description="deliver content of current directory via http/https",
    )
    parser.add_argument(
        "directory",
        nargs="?",
        default=".",
        help="directory to serve (default: current directory)",
    )
    parser.add_argument(
        "-g", "--gzip", action="store_true", help="enable gzip encoding"
    )
    parser.add_argument(
        "-p",
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help="specify port for listening",
    )
    parser.add_argument(
        "-l", "--logging", action="store_true", help="enable logging output"
    )
    parser.add_argument(
        "-2",
        "--http2",
        action="store_true",
        help=(
            "serve over TLS, generating a self signed certificate if one "
            "isn't already present; cert.pem, key.pem"
        ),
    )
    parser.add_argument(
        "-H",
        "--header",
        action="append",
        dest="headers",
        metavar="HEADER",
        help=(
            "custom header(s) to add to the response "
            "(can be repeated multiple times)"
        ),
    )
    parser.add_argument(
        "-sc",
        "--cert-save",
        action="store_true",
        help="whether to save the generated self-signed certificates to disk",
    )
    parser.add_argument(
        "-cd",
        "--cert-dir",
        default=str(default_certificate_directory()),
        help="location to save certificate at if saving to disk",
    )
    parser.add_argument(
        "--host",
        default=os.getenv("SERVE_HOST", ""),
        help="interface to bind (default: all interfaces)",
    )
    default_log_level = os.getenv("SERVE_LOG_LEVEL", "INFO").upper()
    default_destination = os.getenv("SERVE_LOG_DESTINATION", "stdout")
    default_log_format = os.getenv("SERVE_LOG_FORMAT", "text").lower()
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
    )
    parser.add_argument(
        "--log-destination",
        default=default_destination,
        help="stdout or a file path",
    )
    parser.add_argument(
        "--log-format",
        default=default_log_format,
        choices=LOG_FORMATS,
        type=str.lower,
    )
    parser.add_argument(
        "--socket-timeout",
        type=int,
        default=DEFAULT_SOCKET_TIMEOUT,
        help="Socket timeout in seconds for request processing",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser.parse_args(argv)


def build_configuration(args: argparse.Namespace) -> ServerConfiguration:
    """Validate parsed arguments and freeze them into a configuration."""
    directory = Path(args.directory).expanduser()
    if not directory.is_dir():
        raise ConfigurationError(f"Directory does not exist: {args.directory}")
    if not 0 <= args.port <= 65535:
        raise ConfigurationError(f"Invalid port: {args.port}")

    return ServerConfiguration(
        directory=directory,
        port=args.port,
        host=args.host,
        gzip=args.gzip,
        logging=args.logging,
        secure=args.http2,
        headers=parse_header_flags(args.headers),
        persist_certificate=args.cert_save,
        certificate_directory=Path(args.cert_dir).expanduser(),
        socket_timeout=args.socket_timeout,
        log_level=args.log_level,
        log_destination=args.log_destination,
        log_format=args.log_format,
    )
