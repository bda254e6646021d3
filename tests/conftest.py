import pytest

from app.auth.verify import auth_dependency
from app.services.credentials.token_resolution import TokenResolutionStage
from tests.fakes import OWNER_ID, FakeEventStore, FakeGateway, FakeIdentityProvider, FakeRedis


@pytest.fixture
def auth_override():
    def _override():
        return {"sub": OWNER_ID}

    return _override


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def event_store():
    return FakeEventStore()


@pytest.fixture
def identity():
    provider = FakeIdentityProvider()
    provider.connect(OWNER_ID)
    return provider


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def token_stage(identity):
    return TokenResolutionStage(identity)


@pytest.fixture
def apply_auth_override(auth_override):
    def _apply(app):
        app.dependency_overrides[auth_dependency] = auth_override

    return _apply
