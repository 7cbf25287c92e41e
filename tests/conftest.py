import logging

import pytest

from keel.container import Container
from keel.metadata import MetadataStore

log_capture: list[str] = []


class ListLogHandler(logging.Handler):
    def emit(self, record):
        log_capture.append(self.format(record))


@pytest.fixture(autouse=True)
def reset_logging_capture():
    log_capture.clear()


@pytest.fixture
def keel_logs():
    """Capture every record of the ``keel`` logger tree, DEBUG included."""
    logger = logging.getLogger("keel")
    handler = ListLogHandler()
    previous = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    try:
        yield log_capture
    finally:
        logger.removeHandler(handler)
        logger.setLevel(previous)


@pytest.fixture
def store():
    return MetadataStore()


@pytest.fixture
def container(store):
    return Container(store)
