"""Shared fixtures for unit tests."""

import logging

import pytest


@pytest.fixture(autouse=True)
def enable_log_propagation():
    """Ensure logs propagate to root so caplog can catch them."""
    logger = logging.getLogger("serve")
    old_propagate = logger.propagate
    old_handlers = list(logger.handlers)
    old_level = logger.level
    logger.propagate = True
    yield
    logger.propagate = old_propagate
    for handler in logger.handlers:
        if handler not in old_handlers:
            handler.close()
    logger.handlers[:] = old_handlers
    logger.setLevel(old_level)
