"""
pytest configuration for relay tests.

Adds src directory to Python path for imports and sets up test environment.
"""

import os
import sys
from pathlib import Path

import pytest

# Set test environment variables BEFORE any imports
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("JSON_LOGS", "false")

# Add src directory to Python path
src_dir = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_dir))


@pytest.fixture(autouse=True)
def _reset_config_singleton():
    """Each test sees a fresh config singleton."""
    from config import reset_config

    reset_config()
    yield
    reset_config()
