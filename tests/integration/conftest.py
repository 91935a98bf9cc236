import httpx
import pytest
import pytest_asyncio

from src.server.dependencies import get_client_factory, reset_dependencies


@pytest.fixture
def app(client_factory):
    from src.server.main import app

    reset_dependencies()
    app.dependency_overrides[get_client_factory] = lambda: client_factory
    yield app
    app.dependency_overrides.clear()
    reset_dependencies()


@pytest_asyncio.fixture
async def http(app):
    """Async client sharing the test's event loop with the app."""
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client
