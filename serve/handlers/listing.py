"""HTML directory listings."""

import html
import os
import urllib.parse
from pathlib import Path

from serve.domain.http_types import HttpRequest, HttpResponse, should_close

LISTING_CONTENT_TYPE = "text/html; charset=utf-8"


def list_entries(directory: Path) -> list[str]:
    """Return entry names sorted case-insensitively, directories suffixed ``/``."""
    entries = []
    with os.scandir(directory) as scanner:
        for entry in scanner:
            name = entry.name
            if entry.is_dir():
                name += "/"
            entries.append(name)
    entries.sort(key=lambda name: (name.lower(), name))
    return entries


def render_listing(display_path: str, entries: list[str]) -> str:
    """Render entries as a minimal HTML page titled after ``display_path``."""
    title = html.escape(f"Directory listing for {display_path}", quote=False)
    lines = [
        "<!DOCTYPE HTML>",
        '<html lang="en">',
        "<head>",
        '<meta charset="utf-8">',
        '<meta name="viewport" content="width=device-width">',
        f"<title>{title}</title>",
        "</head>",
        "<body>",
        f"<h1>{title}</h1>",
        "<hr>",
        "<ul>",
    ]
    for name in entries:
        href = urllib.parse.quote(name, errors="surrogatepass")
        label = html.escape(name, quote=False)
        lines.append(f'<li><a href="{href}">{label}</a></li>')
    lines.extend(["</ul>", "<hr>", "</body>", "</html>", ""])
    return "\n".join(lines)


def listing_response(request: HttpRequest, directory: Path) -> HttpResponse:
    """Build a 200 response listing the contents of ``directory``."""
    payload = render_listing(request.path, list_entries(directory)).encode(
        "utf-8", "surrogateescape"
    )
    return HttpResponse(
        "HTTP/1.1 200 OK",
        {"Content-Type": LISTING_CONTENT_TYPE},
        payload,
        should_close(request.headers),
        content_length=len(payload),
        omit_body=request.method == "HEAD",
    )
