"""
Shared fixtures: fake clock, fake provider, settings and a wired AuthService.
"""

import pytest

from authflow.auth.context import AuthContext
from authflow.auth.jwks import JwksCache
from authflow.auth.service import AuthService
from authflow.auth.storage import SessionStorage
from authflow.tests.fakes import JWKS_URI, FakeClock, FakeProvider, make_settings


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def provider(clock):
    return FakeProvider(clock=clock)


@pytest.fixture
def http_client(provider):
    return provider.client()


@pytest.fixture
def session_data():
    """Backing mapping of one browser session."""
    return {}


@pytest.fixture
def storage(session_data, clock):
    return SessionStorage(session_data, clock=clock)


@pytest.fixture
def jwks_cache(http_client, clock):
    return JwksCache(JWKS_URI, http_client, ttl=3600, clock=clock)


@pytest.fixture
def service(settings, storage, http_client, clock, jwks_cache):
    context = AuthContext(storage=storage, http_client=http_client, clock=clock)
    return AuthService(settings, context, jwks_cache=jwks_cache)
