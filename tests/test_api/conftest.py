"""Общие фикстуры и хелперы для тестов API."""
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from harvester.api import app as app_module
from harvester.api.app import create_app
from harvester.content_repo import MemoryContentRepository
from harvester.option_store import MemoryOptionStore
from tests.conftest import FakeSite, make_settings

# Общий заголовок авторизации
AUTH_HEADERS = {"Authorization": "Bearer sk-test-key"}


@pytest.fixture(autouse=True)
def _reset_rate_limit():
    """Rate limiter хранит окна в модуле — чистим между тестами."""
    app_module._rate_limit_store.clear()
    yield
    app_module._rate_limit_store.clear()


def make_app(
    store: MemoryOptionStore | None = None,
    repo: MemoryContentRepository | None = None,
    fake: FakeSite | None = None,
    db: MagicMock | None = None,
    scheduler=None,
    **harvest,
):
    """Создать FastAPI app на in-memory хранилищах."""
    settings = make_settings(**{"request_delay": 0, "max_retries": 0, **harvest})
    return create_app(
        store=store or MemoryOptionStore(),
        repo=repo or MemoryContentRepository(),
        settings=settings,
        db=db,
        scheduler=scheduler,
        client_factory=(fake or FakeSite()).client_factory(),
    )


def make_client(**kwargs) -> TestClient:
    return TestClient(make_app(**kwargs))
