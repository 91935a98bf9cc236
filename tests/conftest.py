import os
import sys
from pathlib import Path

import pytest


# Add project root to path
root = Path(__file__).resolve().parents[1]
project_root = str(root)
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# Set environment variables for testing (no default connection, no rate limit)
os.environ.setdefault("CREATIO_BASE_URL", "")
os.environ.setdefault("CREATIO_USERNAME", "")
os.environ.setdefault("CREATIO_PASSWORD", "")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("MCP_SWEEP_INTERVAL_SECONDS", "0")

from tests.fakes import BASE_URL, FakeCreatio  # noqa: E402


@pytest.fixture
def fake_creatio() -> FakeCreatio:
    return FakeCreatio()


@pytest.fixture
def connection_config():
    from src.integrations.crm.models import ConnectionConfig

    return ConnectionConfig(base_url=BASE_URL, username="Supervisor", password="secret")


@pytest.fixture
def creatio_client(fake_creatio, connection_config):
    from src.integrations.crm.creatio import CreatioClient

    return CreatioClient(connection_config, transport=fake_creatio.transport())


@pytest.fixture
def client_factory(fake_creatio):
    """Client factory wired to the fake upstream."""
    from src.integrations.crm.creatio import CreatioClient

    def factory(config):
        return CreatioClient(config, transport=fake_creatio.transport())

    return factory
