import asyncio
import os

import pytest
from fastapi.testclient import TestClient

# Set test environment before importing app/settings
os.environ["ENVIRONMENT"] = "test"
os.environ["GEMINI_API_KEY"] = "test-gemini-key"
os.environ["CORS_ORIGINS"] = "http://allowed.example"
os.environ["LOG_JSON"] = "false"

from vocab_relay.app.api.deps import get_vocabulary_service
from vocab_relay.app.main import app
from vocab_relay.app.providers.types import ProviderHealth
from vocab_relay.app.services.retry import RateLimitedCaller, RetryPolicy
from vocab_relay.app.services.throttle import ThrottleState
from vocab_relay.app.services.vocabulary_service import VocabularyService

SAMPLE_ENTRIES = [
    {
        "word": "ephemeral",
        "part_of_speech": "adjective",
        "definition": "Lasting for a very short time.",
        "example_sentence": "Fame on the internet is often ephemeral.",
        "synonyms": ["fleeting", "transient"],
    }
]


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 100.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class FakeProvider:
    """Fake provider replaying scripted results (exceptions are raised)."""

    provider_id = "fake"
    display_name = "Fake Provider"

    def __init__(self, *results):
        self.results = list(results) or [SAMPLE_ENTRIES]
        self.calls: list[str] = []

    async def generate_json(self, prompt: str, response_schema: dict):
        self.calls.append(prompt)
        result = self.results[min(len(self.calls), len(self.results)) - 1]
        if isinstance(result, BaseException):
            raise result
        return result

    async def healthcheck(self) -> ProviderHealth:
        return ProviderHealth(ok=True, detail="Fake provider is healthy")


class FakeExternalData:
    configured = True

    def __init__(self, payload=None):
        self.payload = payload if payload is not None else {"items": [1, 2, 3]}
        self.calls = 0

    async def fetch(self):
        self.calls += 1
        if isinstance(self.payload, BaseException):
            raise self.payload
        return self.payload

    async def aclose(self):
        return None


@pytest.fixture
def sample_entries():
    return [dict(entry) for entry in SAMPLE_ENTRIES]


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def make_caller(fake_clock):
    def _make(**policy_kwargs) -> RateLimitedCaller:
        defaults = {"max_retries": 3, "min_interval": 0.0, "backoff_base": 1.0, "jitter_max": 0.0}
        defaults.update(policy_kwargs)
        return RateLimitedCaller(
            ThrottleState(clock=fake_clock),
            RetryPolicy(**defaults),
            sleep=fake_clock.sleep,
        )

    return _make


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_external():
    return FakeExternalData()


@pytest.fixture
def vocabulary_service(fake_provider, fake_external, make_caller):
    return VocabularyService(
        provider=fake_provider,
        caller=make_caller(max_retries=2),
        max_words=5,
        external_data=fake_external,
        external_caller=make_caller(max_retries=2),
    )


@pytest.fixture
def client(vocabulary_service):
    app.dependency_overrides[get_vocabulary_service] = lambda: vocabulary_service
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
