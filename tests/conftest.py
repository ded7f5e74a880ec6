"""Shared pytest fixtures for integration and unit tests."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Generator, TypedDict

import pytest

from tests.utils.http import reserve_port, wait_for_port

if TYPE_CHECKING:
    from _pytest.tmpdir import TempPathFactory

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SERVER_ENTRYPOINT = PROJECT_ROOT / "main.py"
INDEX_BODY = (
    b"<!DOCTYPE html><html><body>" + b"hello from serve " * 64 + b"</body></html>\n"
)


def server_command(
    directory: Path,
    host: str,
    port: int,
    extra_args: list[str] | None = None,
    log_file: Path | None = None,
) -> list[str]:
    """Build the argv used to start the server as a subprocess."""
    args = [
        sys.executable,
        str(SERVER_ENTRYPOINT),
        str(directory),
        "--host",
        host,
        "-p",
        str(port),
    ]
    if log_file:
        args.extend(["--log-destination", str(log_file)])
    if extra_args:
        args.extend(extra_args)
    return args


def launch_server(
    host: str,
    port: int,
    directory: Path,
    extra_args: list[str] | None = None,
    log_file: Path | None = None,
) -> Generator[ServerProcessInfo, None, None]:
    """Start the server, wait for its port and stop it afterwards."""
    args = server_command(directory, host, port, extra_args, log_file)
    secure = bool(extra_args) and bool({"-2", "--http2"} & set(extra_args))
    scheme = "https" if secure else "http"

    with subprocess.Popen(
        args,
        cwd=PROJECT_ROOT,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    ) as process:
        try:
            wait_for_port(host, port)
        except Exception:
            # If startup failed, print stdout/stderr to help debug
            process.terminate()
            stdout, stderr = process.communicate(timeout=5)
            print(f"\nServer stdout:\n{stdout}")
            print(f"\nServer stderr:\n{stderr}")
            raise

        yield {
            "base_url": f"{scheme}://{host}:{port}",
            "host": host,
            "port": port,
            "directory": directory,
            "process": process,
            "log_file": log_file,
        }

        if process.poll() is None:
            process.terminate()
        try:
            process.wait(timeout=10)
        except subprocess.TimeoutExpired:
            process.kill()


class ServerProcessInfo(TypedDict):
    """Metadata describing a running server fixture instance."""

    base_url: str
    host: str
    port: int
    directory: Path
    process: subprocess.Popen[str]
    log_file: Path | None


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Expose the repository root path to tests."""

    return PROJECT_ROOT


@pytest.fixture(name="site_root")
def _site_root(tmp_path_factory: "TempPathFactory") -> Path:
    """Create a small directory tree to serve."""

    root = tmp_path_factory.mktemp("site")
    (root / "index.html").write_bytes(INDEX_BODY)
    (root / "notes.txt").write_text("plain notes\n", encoding="utf-8")
    docs = root / "docs"
    docs.mkdir()
    (docs / "guide.txt").write_text("guide\n", encoding="utf-8")
    return root


@pytest.fixture(name="log_file")
def _log_file(tmp_path_factory: "TempPathFactory") -> Path:
    """Location for the server log, kept outside the served tree."""

    return tmp_path_factory.mktemp("logs") / "server.log"


@pytest.fixture(name="server_process")
def _server_process(
    site_root: Path, log_file: Path
) -> Generator[ServerProcessInfo, None, None]:
    """Launch the file server with default options."""

    host = "127.0.0.1"
    port = reserve_port(host)
    yield from launch_server(host, port, site_root, log_file=log_file)


@pytest.fixture()
def base_url(server_process: ServerProcessInfo) -> str:
    """Expose the running server base URL to integration tests."""

    return server_process["base_url"]
