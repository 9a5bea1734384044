import os
os.environ["APP_ENV"] = "test"

# THEN import anything else
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from processaudit.api.deps import IntegrationRuntime
from processaudit.core.settings import Settings, get_settings
from processaudit.integrations.events import InMemoryEventSink
from processaudit.main import create_app


@pytest.fixture()
def settings() -> Settings:
    return get_settings()


@pytest.fixture()
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture()
def runtime(settings: Settings, event_sink: InMemoryEventSink) -> IntegrationRuntime:
    return IntegrationRuntime.from_settings(settings, event_sink=event_sink)


@pytest.fixture()
def client(runtime: IntegrationRuntime) -> Generator[TestClient, None, None]:
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client
