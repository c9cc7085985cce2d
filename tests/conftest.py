"""Shared fixtures for the metering tests."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tokenmeter.database import init_db
from tokenmeter.metering.counters import InMemoryUsageCounterBackend, UsageCounterStore
from tokenmeter.metering.directory import ModelDirectory, ModelRecord, ProviderRecord, QuotaRecord
from tokenmeter.metering.loaders import StaticDirectoryLoader
from tokenmeter.metering.metrics import get_metrics_collector
from tokenmeter.metering.service import TokenStatsService

AZURE_ID = "11111111-1111-4111-8111-111111111111"
GOOGLE_ID = "22222222-2222-4222-8222-222222222222"
GPT_ID = "33333333-3333-4333-8333-333333333333"
GEMINI_ID = "44444444-4444-4444-8444-444444444444"
RETIRED_ID = "55555555-5555-4555-8555-555555555555"
GPT_QUOTA_ID = "66666666-6666-4666-8666-666666666666"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_metrics():
    """Each test starts with empty metrics."""
    get_metrics_collector().reset_metrics()
    yield


@pytest.fixture
def providers():
    return [
        ProviderRecord(
            id=AZURE_ID,
            name="azure",
            display_name="Azure OpenAI",
            aliases=frozenset({"azure-openai", "azure-openai.chat"}),
        ),
        ProviderRecord(id=GOOGLE_ID, name="google", display_name="Google", aliases=frozenset({"gemini"})),
    ]


@pytest.fixture
def models():
    return [
        ModelRecord(id=GPT_ID, provider_id=AZURE_ID, model_name="gpt-4.1"),
        ModelRecord(id=GEMINI_ID, provider_id=GOOGLE_ID, model_name="gemini-2.5-pro"),
        ModelRecord(id=RETIRED_ID, provider_id=AZURE_ID, model_name="gpt-35-turbo", is_active=False),
    ]


@pytest.fixture
def quotas():
    return [
        QuotaRecord(
            id=GPT_QUOTA_ID,
            model_id=GPT_ID,
            max_tokens_per_message=500,
            max_tokens_per_minute=1000,
            max_tokens_per_day=5000,
        ),
    ]


@pytest.fixture
def loader(providers, models, quotas):
    return StaticDirectoryLoader(providers, models, quotas)


@pytest.fixture
def directory(loader):
    """Directory loaded with azure/gpt-4.1 (with quota) and google/gemini-2.5-pro (no quota)."""
    directory = ModelDirectory(loader=loader)
    assert directory.refresh() is True
    yield directory
    directory.stop_auto_refresh()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def backend(clock):
    return InMemoryUsageCounterBackend(clock=clock)


@pytest.fixture
def counters(backend):
    return UsageCounterStore(backend, ttl_grace_seconds=5)


@pytest.fixture
def engine():
    """Isolated in-memory SQLite database shared across sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def service(directory, counters):
    """Service without durable recording."""
    service = TokenStatsService(directory, counters, recorder=None, max_workers=2)
    yield service
    service.shutdown(wait=True)


class BrokenBackend(InMemoryUsageCounterBackend):
    """Counter backend whose every call fails, as during a store outage."""

    def increment(self, keys, usage, ttls):
        raise ConnectionError("store unreachable")

    def fetch(self, keys):
        raise TimeoutError("store timed out")

    def ttl(self, key):
        raise TimeoutError("store timed out")
