"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all test modules
- Test environment setup
"""

import os
import sys
from pathlib import Path

import pytest

# Add parent directory to Python path so tests can import project modules
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

# Ensure test environment variables are set early enough (during test collection),
# because the app loads config at import time.
os.environ.setdefault("UPSTREAM_HOST", "upstream.test")
os.environ.setdefault("LOG_LEVEL", "DEBUG")
os.environ.setdefault("LOG_PATH", "/tmp/responses_proxy_test.log")
os.environ.setdefault("LOG_COLOR", "false")


@pytest.fixture(scope="session")
def project_root_path():
    """Get project root path."""
    return project_root


@pytest.fixture
def test_config():
    """Create test configuration."""
    from config import AppConfig

    return AppConfig(
        upstream_host="right.codes",
        upstream_scheme="https",
        session_cookie_name="rc_session",
        request_timeout_s=60.0,
        log_request_bodies=True,
        log_body_max_chars=20000,
        port=8000,
        log_level="INFO",
        log_path="/tmp/responses_proxy_test.log",
    )


@pytest.fixture
def sse_chunks():
    """Split bytes into chunks at the given offsets."""

    def _split(data: bytes, *offsets: int) -> list:
        bounds = [0, *offsets, len(data)]
        return [data[a:b] for a, b in zip(bounds, bounds[1:])]

    return _split
