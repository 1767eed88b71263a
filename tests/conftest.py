import logging
import sys
from unittest.mock import MagicMock

import pytest

# Mock fcntl for Windows
if sys.platform.startswith("win"):
    if "fcntl" not in sys.modules:
        mock_fcntl = MagicMock()
        mock_fcntl.LOCK_EX = 1
        mock_fcntl.LOCK_NB = 2
        mock_fcntl.LOCK_UN = 8
        sys.modules["fcntl"] = mock_fcntl

from media_sync import process_runner


@pytest.fixture(autouse=True)
def reset_process_runner():
    """Clears the global shutdown flag so one test's SIGTERM cannot leak into the next."""
    process_runner.reset_shutdown_state()
    yield
    process_runner.reset_shutdown_state()


@pytest.fixture
def restore_root_logger():
    """Restores root logger handlers replaced by setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
