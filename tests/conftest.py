import logging

import pytest

import uptime


@pytest.fixture(autouse=True)
def reset_logging():
    """main.run() attaches handlers to the uptime logger; drop them so they don't outlive the test."""
    yield
    for handler in list(uptime.LOGGER.handlers):
        uptime.LOGGER.removeHandler(handler)
        handler.close()
    uptime.LOGGER.setLevel(logging.INFO)
