from __future__ import annotations

from datetime import datetime

import pytest

from Enliterator_KG.application import Application, build_application
from Enliterator_KG.config.settings import AppSettings, EmbeddingSettings, get_settings
from Enliterator_KG.kg.backend import InMemoryGraphBackend
from Enliterator_KG.orchestration.queue import DelayedTaskQueue
from Enliterator_KG.pipeline.store import InMemoryPipelineStore

from tests.fakes import FakeEmbeddingProvider, FixedClock, ManualTime, collaborators

BUSINESS_HOURS = datetime(2026, 3, 4, 10, 30)
OFF_HOURS = datetime(2026, 3, 4, 23, 15)


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings(embedding=EmbeddingSettings(retry_base_seconds=1.0, max_poll_failures=3))


@pytest.fixture
def store() -> InMemoryPipelineStore:
    return InMemoryPipelineStore()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(BUSINESS_HOURS)


@pytest.fixture
def manual_time() -> ManualTime:
    return ManualTime()


@pytest.fixture
def queue(manual_time: ManualTime) -> DelayedTaskQueue:
    return DelayedTaskQueue(clock=manual_time)


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def graph_backend() -> InMemoryGraphBackend:
    return InMemoryGraphBackend()


@pytest.fixture
def fakes():
    return collaborators()


@pytest.fixture
def application(settings, store, queue, provider, graph_backend, clock, fakes) -> Application:
    return build_application(
        settings,
        collaborators=fakes,
        store=store,
        graph_backend=graph_backend,
        provider=provider,
        queue=queue,
        clock=clock,
    )

