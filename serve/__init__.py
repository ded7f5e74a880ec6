"""Serve the contents of a local directory over HTTP or HTTPS."""

__version__ = "2.0.0"
