import logging
import os
import sys

import pytest

# Top-level modules (gateway.py, supervisor.py, ...) and the shared fakes in this directory.
TESTS_DIR = os.path.abspath(os.path.dirname(__file__))
REPO_ROOT = os.path.dirname(TESTS_DIR)
for path in (REPO_ROOT, TESTS_DIR):
    if path not in sys.path:
        sys.path.insert(0, path)


@pytest.fixture(autouse=True)
def _reset_supervisor_logger():
    # setup_logging() detaches "supervisor" from the root logger; keep caplog usable.
    logger = logging.getLogger("supervisor")
    handlers, propagate = list(logger.handlers), logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.propagate = propagate
