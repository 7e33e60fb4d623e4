import pytest

from chat_relay.config import RelaySettings, get_settings
from chat_relay.services import observability
from chat_relay.services.transcript_store import InMemoryTranscriptStore

from fixtures.fake_upstream import FakeUpstream


@pytest.fixture(autouse=True)
def _reset_observability():
    observability.reset()
    yield
    observability.reset()


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> RelaySettings:
    return RelaySettings(
        _env_file=None,
        upstream_base_url="http://upstream.test/v1",
        upstream_api_key="sk-test",
        default_system_prompt="You are a test assistant.",
        context_turns=20,
    )


@pytest.fixture
def store() -> InMemoryTranscriptStore:
    return InMemoryTranscriptStore()


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()
