"""
Pytest configuration and fixtures for the SSE dispatch tests
"""

import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))  # noqa: PTH100, PTH118, PTH119, PTH120

from utils.fixtures import manager, mock_scheduler, override_sse_manager  # noqa: E402, F401
