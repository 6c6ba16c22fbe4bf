# tests/conftest.py
import sys
import time
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]  # repository root
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from fastapi.testclient import TestClient  # noqa: E402

from src.adapters.blob_store import BlobStore  # noqa: E402
from src.adapters.database import ClientRegistry  # noqa: E402
from src.app.api import create_app  # noqa: E402
from src.config import Settings  # noqa: E402

SECRET = "test-presign-secret"

ACME = {"client_id": "acme", "api_key": "key-acme", "allowed_origin": "https://acme.example"}
GLOBEX = {"client_id": "globex", "api_key": "key-globex", "allowed_origin": "*"}


class FakeClock:
    """Callable clock whose time only moves when a test says so."""

    def __init__(self, now: float | None = None):
        self.now = float(now if now is not None else int(time.time()))

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def clock():
    return FakeClock(1_700_000_000)


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        storage_root=tmp_path / "storage",
        database_url=f"sqlite:///{tmp_path / 'clients' / 'clients.db'}",
        presign_secret=SECRET,
    )


@pytest.fixture()
def blob_store(settings):
    return BlobStore(settings.storage_root)


@pytest.fixture()
def registry(settings):
    with ClientRegistry(settings.database_url) as reg:
        yield reg


@pytest.fixture()
def app(settings, clock):
    return create_app(settings, clock=clock)


@pytest.fixture()
def client(app):
    """Running application with two registered tenants."""
    with TestClient(app) as test_client:
        app.state.registry.add(**ACME)
        app.state.registry.add(**GLOBEX)
        yield test_client


@pytest.fixture()
def acme_headers():
    return {"x-api-key": ACME["api_key"], "Origin": ACME["allowed_origin"]}
