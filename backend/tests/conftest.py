"""Shared pytest fixtures for Forkchat tests."""

import pytest
from httpx import ASGITransport, AsyncClient

from forkchat.main import app
from forkchat.providers.registry import clear_providers, register_provider
from forkchat.relay.router import RelayTarget, get_relay_target
from forkchat.settings import Settings
from forkchat.trees.canvas import Canvas
from forkchat.trees.router import get_tree_service
from forkchat.trees.service import TreeService
from tests.fixtures import FakeProvider


@pytest.fixture
def settings():
    """Packaged defaults without the chunk timeout, pointed at the fake provider."""
    return Settings(provider="fake", stream_chunk_timeout=None)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def canvas(provider, settings):
    """A canvas holding only its invitation node."""
    canvas = Canvas.create("test-tree", provider, settings)
    canvas.ensure_root()
    return canvas


@pytest.fixture
async def client(provider, settings):
    """Async test client with the fake provider wired into the app."""
    clear_providers()
    register_provider(provider)
    service = TreeService(settings)
    app.dependency_overrides[get_tree_service] = lambda: service
    app.dependency_overrides[get_relay_target] = lambda: RelayTarget(
        provider=provider, model="fake-model"
    )
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    await service.shutdown()
    app.dependency_overrides.clear()
    clear_providers()
