"""
Pytest configuration and fixtures for the replenishment engine
"""
import os
import tempfile

import pytest

# The app binds its engine at import time; point it at a throwaway SQLite file
_DB_DIR = tempfile.mkdtemp(prefix="replenishment-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'engine.db')}"

from integrations.client import LinnworksClient  # noqa: E402
from integrations.session_cache import SessionCache  # noqa: E402
from tests.fakes import AUTH_URL, AUTH_OK, FakeHttp, FakeResponse, FakeClock  # noqa: E402


@pytest.fixture
def http():
    fake = FakeHttp()
    fake.add("/api/Auth/AuthorizeByApplication", FakeResponse(200, AUTH_OK))
    return fake


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sessions(http, clock):
    return SessionCache("app-id", "app-secret", "install-token",
                        auth_url=AUTH_URL, ttl_seconds=25 * 60, http=http, clock=clock)


@pytest.fixture
def lw(sessions, http):
    return LinnworksClient(sessions, http=http, timeout=5)


@pytest.fixture
def flask_app(lw, monkeypatch):
    import app as app_module

    monkeypatch.setattr(app_module, "lw_client", lw)
    app_module.app.config["TESTING"] = True
    return app_module.app


@pytest.fixture
def api(flask_app):
    """Flask test client wired to the fake platform"""
    return flask_app.test_client()
