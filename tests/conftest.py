import os
import sys

import pytest

BIN = os.path.join(os.path.dirname(__file__), "bin")

DOUBLE_CHARS_CMD = [sys.executable, os.path.join(BIN, "double_chars.py"), "the"]
FOX = "The quick brown fox jumped over the lazy dog\n"
FOX_DOUBLED = "The quick brown fox jumped over thethe lazy dog\n"


@pytest.fixture
def open_fds():
    """Count of this process's open descriptors, where /proc shows them."""
    if not os.path.isdir("/proc/self/fd"):
        pytest.skip("needs /proc/self/fd")
    return lambda: len(os.listdir("/proc/self/fd"))
