import pytest

from core.orchestrator import RequestOrchestrator
from storage.cache import InMemorySessionCache

from fakes import make_config, make_wav


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def cache():
    return InMemorySessionCache()


@pytest.fixture
def orchestrator(cache, config):
    return RequestOrchestrator(cache, config.circuit, default_timeout=1.0)


@pytest.fixture
def audio():
    return make_wav(1.0)
