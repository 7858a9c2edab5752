"""Shared fixtures for ccmetrics tests."""

import logging

import pytest


@pytest.fixture(autouse=True)
def reset_ccmetrics_logger():
    """Detach handlers the CLI attaches so log files in tmp dirs are closed."""
    yield
    logger = logging.getLogger("ccmetrics")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
