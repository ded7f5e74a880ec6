"""Serve a local directory over HTTP or HTTPS."""

import sys

from serve.bootstrap.app import main

if __name__ == "__main__":
    sys.exit(main())
