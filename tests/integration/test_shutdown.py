"""Integration tests for graceful shutdown behavior."""

import signal
import socket
import time

import pytest

from tests.conftest import ServerProcessInfo
from tests.utils.http import read_http_response, request_status, send_signal_to_process


@pytest.mark.parametrize("sig", [signal.SIGINT, signal.SIGTERM])
def test_signal_stops_server_cleanly(server_process: ServerProcessInfo, sig) -> None:
    """SIGINT and SIGTERM both drain and exit with status 0."""
    process = server_process["process"]
    assert request_status(server_process["host"], server_process["port"]) == 200

    send_signal_to_process(process.pid, sig)

    assert process.wait(timeout=7) == 0


def test_server_drains_before_exit(server_process: ServerProcessInfo) -> None:
    """An in-flight request completes after the shutdown signal."""
    host = server_process["host"]
    port = server_process["port"]
    process = server_process["process"]
    big_file = server_process["directory"] / "big.bin"
    big_file.write_bytes(b"x" * (4 * 1024 * 1024))

    with socket.create_connection((host, port), timeout=5) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_RCVBUF, 4096)
        sock.sendall(b"GET /big.bin HTTP/1.1\r\nHost: localhost\r\n\r\n")
        first = sock.recv(1024)
        send_signal_to_process(process.pid, signal.SIGTERM)
        time.sleep(0.2)
        assert process.poll() is None
        rest = read_http_response(sock, prefix=first)

    assert rest.status_line == "HTTP/1.1 200 OK"
    assert len(rest.body) == 4 * 1024 * 1024
    assert process.wait(timeout=7) == 0


def test_listener_closes_after_signal(server_process: ServerProcessInfo) -> None:
    """New connections are refused once the server has stopped."""
    host = server_process["host"]
    port = server_process["port"]
    process = server_process["process"]

    send_signal_to_process(process.pid, signal.SIGTERM)
    process.wait(timeout=7)

    with pytest.raises(OSError):
        socket.create_connection((host, port), timeout=1).close()


def test_idle_keep_alive_connection_does_not_block_exit(
    server_process: ServerProcessInfo,
) -> None:
    """Idle keep-alive connections are released during the drain."""
    host = server_process["host"]
    port = server_process["port"]
    process = server_process["process"]

    with socket.create_connection((host, port), timeout=5) as sock:
        sock.sendall(b"GET /notes.txt HTTP/1.1\r\nHost: localhost\r\n\r\n")
        read_http_response(sock)
        started = time.monotonic()
        send_signal_to_process(process.pid, signal.SIGTERM)
        assert process.wait(timeout=7) == 0

    assert time.monotonic() - started < 5

