"""Transparent gzip content encoding."""

import dataclasses
import gzip
import logging
import zlib
from typing import Iterable, Iterator

from serve.domain.correlation_id import CorrelationLoggerAdapter
from serve.domain.http_types import Handler, HttpRequest, HttpResponse

COMPRESSION_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("serve.pipeline.compression"), {}
)

COMPRESSION_LEVEL = 6
GZIP_WBITS = 16 + zlib.MAX_WBITS
UNCOMPRESSED_STATUS_CODES = {204, 304}


def accepts_gzip(headers: dict[str, str]) -> bool:
    """Return True when the Accept-Encoding header includes gzip with q>0."""
    encodings = headers.get("accept-encoding", "")
    for token in encodings.split(","):
        value = token.strip()
        if not value:
            continue
        algorithm, _, params = value.partition(";")
        if algorithm.strip().lower() not in {"gzip", "*"}:
            continue
        quality = 1.0
        if params:
            for param in params.split(";"):
                key, _, raw_value = param.strip().partition("=")
                if key.lower() == "q" and raw_value:
                    try:
                        quality = float(raw_value)
                    except ValueError:
                        quality = 0.0
                    break
        if quality > 0:
            return True
    return False


def gzip_stream(chunks: Iterable[bytes]) -> Iterator[bytes]:
    """Compress an iterable of chunks into gzip-framed chunks."""
    compressor = zlib.compressobj(COMPRESSION_LEVEL, zlib.DEFLATED, GZIP_WBITS)
    try:
        for chunk in chunks:
            compressed = compressor.compress(chunk)
            if compressed:
                yield compressed
        yield compressor.flush()
    finally:
        close = getattr(chunks, "close", None)
        if close is not None:
            close()


def _add_vary(headers: dict[str, str]) -> dict[str, str]:
    merged = dict(headers)
    existing = merged.get("Vary", "")
    values = [value.strip() for value in existing.split(",") if value.strip()]
    if not any(value.lower() in {"accept-encoding", "*"} for value in values):
        values.append("Accept-Encoding")
    merged["Vary"] = ", ".join(values)
    return merged


def _is_compressible(request: HttpRequest, response: HttpResponse) -> bool:
    if request.method == "HEAD" or response.omit_body:
        return False
    status_code = response.status_code
    if status_code < 200 or status_code in UNCOMPRESSED_STATUS_CODES:
        return False
    if any(name.lower() == "content-encoding" for name in response.headers):
        return False
    if response.body_iter is None and not response.body:
        return False
    return accepts_gzip(request.headers)


def compress_response(request: HttpRequest, response: HttpResponse) -> HttpResponse:
    """Return ``response`` gzip-encoded when the client accepts it."""
    if not _is_compressible(request, response):
        return dataclasses.replace(response, headers=_add_vary(response.headers))

    headers = _add_vary(response.headers)
    headers["Content-Encoding"] = "gzip"
    if response.body_iter is None:
        payload = gzip.compress(response.body, compresslevel=COMPRESSION_LEVEL)
        COMPRESSION_LOGGER.debug(
            "Compressed payload",
            extra={"event": "payload_compressed", "bytes": len(response.body)},
        )
        return dataclasses.replace(
            response, headers=headers, body=payload, content_length=len(payload)
        )

    COMPRESSION_LOGGER.debug(
        "Compressing streamed body", extra={"event": "stream_compressed"}
    )
    return dataclasses.replace(
        response,
        headers=headers,
        body_iter=gzip_stream(response.body_iter),
        content_length=None,
        use_chunked=True,
    )


def gzip_compression(handler: Handler) -> Handler:
    """Wrap ``handler`` so its response bodies are gzip-encoded on request."""

    def handle(request: HttpRequest) -> HttpResponse:
        return compress_response(request, handler(request))

    return handle
