"""Unit tests for request pipeline composition and its steps."""

import gzip
import logging
from pathlib import Path

import pytest

from serve.bootstrap.config import ServerConfiguration, parse_header_flags
from serve.domain.http_types import HttpRequest, HttpResponse
from serve.pipeline.access_log import request_logging
from serve.pipeline.composer import build_handler, compose, pipeline_steps
from serve.pipeline.custom_headers import apply_headers, custom_headers
from serve.pipeline.error_handling import internal_errors


def make_request(
    path: str = "/index.html", headers: dict[str, str] | None = None
) -> HttpRequest:
    """Create a GET request for ``path``."""
    return HttpRequest("GET", path, headers or {}, b"", path)


def ok_handler(request: HttpRequest) -> HttpResponse:
    """A base handler that echoes the path."""
    body = f"served {request.path}".encode()
    return HttpResponse(
        "HTTP/1.1 200 OK",
        {"Content-Type": "text/plain", "Server": "inner"},
        body,
        False,
        content_length=len(body),
    )


def tagging(tag: str, calls: list[str]):
    """Middleware that records when it runs and marks the response."""

    def middleware(handler):
        def handle(request):
            calls.append(f"{tag}:before")
            response = handler(request)
            calls.append(f"{tag}:after")
            response.headers[f"X-{tag}"] = "1"
            return response

        return handle

    return middleware


@pytest.fixture(name="site")
def site_fixture(tmp_path: Path) -> Path:
    """A directory with an index document."""
    (tmp_path / "index.html").write_bytes(b"<h1>hello</h1>" * 50)
    return tmp_path


def test_compose_without_steps_returns_base() -> None:
    """An empty pipeline is the base handler itself."""
    assert compose(ok_handler, []) is ok_handler


def test_compose_runs_first_step_outermost() -> None:
    """Steps listed first see the request first and the response last."""
    calls: list[str] = []
    handler = compose(ok_handler, [tagging("outer", calls), tagging("inner", calls)])

    handler(make_request())

    assert calls == ["outer:before", "inner:before", "inner:after", "outer:after"]


def test_pipeline_steps_follow_fixed_order(tmp_path: Path) -> None:
    """Logging wraps headers, which wrap gzip, which wraps the error step."""
    config = ServerConfiguration(
        directory=tmp_path,
        gzip=True,
        logging=True,
        headers=parse_header_flags(["X-Test: 1"]),
    )

    assert [name for name, _ in pipeline_steps(config)] == [
        "logging",
        "custom_headers",
        "gzip",
        "errors",
    ]


def test_pipeline_steps_empty_by_default(tmp_path: Path) -> None:
    """No options means no steps."""
    assert not pipeline_steps(ServerConfiguration(directory=tmp_path))


def test_apply_headers_overrides_case_insensitively() -> None:
    """Configured headers replace inner headers regardless of case."""
    merged = apply_headers(
        {"content-type": "text/plain", "Server": "inner"},
        {"Content-Type": "application/json"},
    )

    assert merged == {"Server": "inner", "Content-Type": "application/json"}


def test_custom_headers_apply_to_every_response() -> None:
    """Every response, errors included, carries the configured headers."""

    def not_found(_request):
        return HttpResponse("HTTP/1.1 404 Not Found", {}, b"", False)

    middleware = custom_headers({"X-Frame-Options": "DENY", "Server": "serve"})

    ok = middleware(ok_handler)(make_request())
    missing = middleware(not_found)(make_request("/missing"))

    assert ok.headers["X-Frame-Options"] == "DENY"
    assert ok.headers["Server"] == "serve"
    assert missing.headers["X-Frame-Options"] == "DENY"


def test_request_logging_logs_method_and_target(caplog) -> None:
    """One INFO line per request names the method and raw target."""
    caplog.set_level(logging.INFO, logger="serve.access")
    handler = request_logging(ok_handler)

    response = handler(
        HttpRequest("GET", "/index.html", {}, b"", "/index.html?v=2")
    )

    assert response.status_code == 200
    records = [r for r in caplog.records if r.name == "serve.access"]
    assert len(records) == 1
    assert records[0].getMessage() == "GET /index.html?v=2"
    assert records[0].event == "request_received"


def test_request_logging_debug_records_status(caplog) -> None:
    """At DEBUG the status code and duration are logged as well."""
    logging.getLogger("serve").setLevel(logging.DEBUG)
    caplog.set_level(logging.DEBUG, logger="serve.access")

    request_logging(ok_handler)(make_request())

    handled = [
        r for r in caplog.records if getattr(r, "event", None) == "request_handled"
    ]
    assert handled and handled[0].status_code == 200
    assert handled[0].duration_ms >= 0


def test_build_handler_with_no_options_serves_files(site: Path) -> None:
    """The base pipeline serves files untouched."""
    handler = build_handler(ServerConfiguration(directory=site))

    response = handler(make_request(headers={"accept-encoding": "gzip"}))

    assert response.status_code == 200
    assert "Content-Encoding" not in response.headers
    assert b"".join(response.body_iter) == (site / "index.html").read_bytes()


def test_build_handler_gzip_and_headers(site: Path) -> None:
    """Gzip and custom headers compose over the file handler."""
    config = ServerConfiguration(
        directory=site,
        gzip=True,
        headers=parse_header_flags(["Cache-Control: no-store"]),
    )
    handler = build_handler(config)

    response = handler(make_request(headers={"accept-encoding": "gzip"}))

    assert response.headers["Content-Encoding"] == "gzip"
    assert response.headers["Cache-Control"] == "no-store"
    assert gzip.decompress(b"".join(response.body_iter)) == (
        site / "index.html"
    ).read_bytes()


def test_build_handler_custom_headers_on_not_found(site: Path) -> None:
    """Custom headers reach error responses produced by the file handler."""
    config = ServerConfiguration(
        directory=site, headers=parse_header_flags(["X-Served-By: serve"])
    )

    response = build_handler(config)(make_request("/missing.txt"))

    assert response.status_code == 404
    assert response.headers["X-Served-By"] == "serve"


def test_build_handler_accepts_custom_base(tmp_path: Path) -> None:
    """A caller-supplied base handler replaces the file handler."""
    config = ServerConfiguration(directory=tmp_path, logging=True)

    response = build_handler(config, base=ok_handler)(make_request("/x"))

    assert response.body == b"served /x"


def test_pipeline_steps_single_option_adds_error_step(tmp_path: Path) -> None:
    """The error step joins as soon as any other step is enabled."""
    config = ServerConfiguration(directory=tmp_path, gzip=True)

    assert [name for name, _ in pipeline_steps(config)] == ["gzip", "errors"]


def test_internal_errors_turns_exceptions_into_500(caplog) -> None:
    """A failing handler answers 500 and logs the failure."""
    caplog.set_level(logging.ERROR, logger="serve.pipeline.errors")

    def failing(_request):
        raise RuntimeError("boom")

    response = internal_errors(failing)(make_request())

    assert response.status_code == 500
    assert [
        r.event for r in caplog.records if r.name == "serve.pipeline.errors"
    ] == ["handler_error"]


def test_build_handler_failure_is_logged_with_custom_headers(
    tmp_path: Path, caplog
) -> None:
    """A raising base handler still yields headers and an access-log line."""
    caplog.set_level(logging.INFO, logger="serve.access")
    config = ServerConfiguration(
        directory=tmp_path,
        logging=True,
        headers=parse_header_flags(["X-Served-By: serve"]),
    )

    def failing(_request):
        raise PermissionError("denied")

    response = build_handler(config, base=failing)(make_request("/broken"))

    assert response.status_code == 500
    assert response.headers["X-Served-By"] == "serve"
    assert [
        r.getMessage() for r in caplog.records if r.name == "serve.access"
    ] == ["GET /broken"]


def test_build_handler_traversal_gets_custom_headers(site: Path) -> None:
    """Parent segments are refused by the file handler, inside the pipeline."""
    config = ServerConfiguration(
        directory=site, headers=parse_header_flags(["X-Served-By: serve"])
    )

    response = build_handler(config)(make_request("/a/../index.html"))

    assert response.status_code == 403
    assert response.headers["X-Served-By"] == "serve"
