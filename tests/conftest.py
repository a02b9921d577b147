"""Shared fixtures: a store on a temporary SQLite file and blob directory."""
import io
import zipfile

import pytest
from fastapi.testclient import TestClient

from catalog.config import Settings
from catalog.database import create_db_and_tables, make_engine
from catalog.main import create_app
from catalog.service import CatalogStore
from catalog.storage import ContentStorage

BUCKET = "workflows"


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, now=1_000):
        self.now = now

    def __call__(self):
        return self.now


def make_zip(entries):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for path, content in entries:
            zf.writestr(path, content)
    return buffer.getvalue()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'catalog.db'}",
        storage_root=tmp_path / "data",
    )


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(settings):
    return ContentStorage(settings.storage_root)


@pytest.fixture
def store(engine, storage, clock):
    store = CatalogStore(engine, storage, clock=clock)
    store.create_bucket(BUCKET, owner="alice")
    return store


@pytest.fixture
def client(settings):
    app = create_app(settings)
    with TestClient(app) as test_client:
        test_client.post("/buckets", params={"name": BUCKET, "owner": "alice"})
        yield test_client


@pytest.fixture
def make_archive():
    return make_zip
