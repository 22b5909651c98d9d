import logging

import pytest


@pytest.fixture(autouse=True)
def restore_ledger_logger():
    """setup_logging replaces handlers and stops propagation; undo it per test"""
    logger = logging.getLogger("loan_ledger")
    handlers = logger.handlers[:]
    level = logger.level
    propagate = logger.propagate
    yield
    logger.handlers = handlers
    logger.setLevel(level)
    logger.propagate = propagate
