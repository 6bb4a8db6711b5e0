"""
Pytest configuration and shared fixtures for backend tests.
"""
import os
import sys
from pathlib import Path

import pytest

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

# Set test config directory before importing modules
os.environ["CONFIG_DIR"] = "/tmp/portal_test_config"

# Ensure test config directory exists
Path("/tmp/portal_test_config").mkdir(parents=True, exist_ok=True)

from models import Identity
from portal_client import PortalClient
from stream_prober import set_prober
from token_cache import TokenCache
from tests.fixtures.mock_portal import (  # noqa: F401 - fixtures
    MOCK_PORTAL_HOST,
    MOCK_PORTAL_PORT,
    mock_portal,
    mock_portal_router,
)


@pytest.fixture
def identity():
    """Identity of the mock portal."""
    return Identity(
        hostname=MOCK_PORTAL_HOST,
        port=MOCK_PORTAL_PORT,
        context_path="stalker_portal",
        mac="00:1A:79:00:00:01",
        device_id1="A" * 64,
        device_id2="B" * 64,
        serial_number="0123456789ABC",
    )


@pytest.fixture
def token_cache():
    return TokenCache(ttl=300)


@pytest.fixture
async def portal_client(identity, token_cache):
    """Portal client with short retry delays."""
    client = PortalClient(identity, token_cache=token_cache, timeout=2.0, retries=3, backoff_base=0.001)
    try:
        yield client
    finally:
        await client.close()


@pytest.fixture(autouse=True)
def reset_shared_prober():
    """Each test starts without a shared StreamProber."""
    set_prober(None)
    yield
    set_prober(None)
