import logging

import pytest


@pytest.fixture(autouse=True)
def restore_logger():
    """Undo setup_logging() calls so handlers never leak between tests."""
    logger = logging.getLogger("mcsocks")
    level, handlers = logger.level, list(logger.handlers)
    yield logger
    for h in list(logger.handlers):
        if h not in handlers:
            logger.removeHandler(h)
            h.close()
    logger.setLevel(level)
    for h in handlers:
        if h not in logger.handlers:
            logger.addHandler(h)
