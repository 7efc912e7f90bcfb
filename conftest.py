# Ensure tests import the relay package from this checkout first.
import os
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

SERVICE_ROOT = os.path.dirname(__file__)
if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from cors_relay.config import ProxyConfig  # noqa: E402
from cors_relay.server import create_app, create_http_client  # noqa: E402
from cors_relay.utils_tests.mock_backend import RecordingBackend  # noqa: E402

TEST_BACKEND_URL = "https://vps.kodub.com"


@pytest.fixture
def relay_config() -> ProxyConfig:
    return ProxyConfig(backend_url=TEST_BACKEND_URL, use_tls=False)


@pytest.fixture
def backend() -> RecordingBackend:
    """Mock backend; set ``backend.reply`` to change what it answers."""
    return RecordingBackend()


@pytest.fixture
def relay_client(relay_config, backend):
    """TestClient for a relay whose backend is the recording mock."""
    http_client = create_http_client(
        relay_config, transport=httpx.MockTransport(backend)
    )
    app = create_app(relay_config, http_client=http_client)
    with TestClient(app) as client:
        yield client
