import json
from pathlib import Path
from typing import Callable

import httpx
import pytest
from fastapi.testclient import TestClient

from railsavior.config import AGENCY_KEY_ENV

FIXTURES = Path(__file__).resolve().parent / "fixtures"

USER_HEADERS = {"X-User-Id": "alice"}


def load_fixture(name: str):
    return json.loads((FIXTURES / name).read_text())


def as_user(user_id: str, role: str = "user") -> dict:
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for names in AGENCY_KEY_ENV.values():
        for name in names:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("UPSTREAM_BACKOFF", "0")


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path}/test.db")
    from railsavior.main import app

    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def upstream(client):
    """Route every agency call through ``handler`` instead of the network."""
    from railsavior.main import app_state

    installed = []

    def install(handler: Callable[[httpx.Request], httpx.Response]) -> None:
        replaced = app_state["http_client"]
        app_state["http_client"] = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        installed.append(app_state["http_client"])
        client.portal.call(replaced.aclose)

    yield install

    for mock_client in installed:
        client.portal.call(mock_client.aclose)
