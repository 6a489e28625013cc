"""Pytest configuration and shared fixtures"""

import io
import time

import fakeredis
import pytest

from app import create_app
from config import Config
from lifecycle import Lifecycle
from storage import BlobStore, MetadataStore


@pytest.fixture
def cfg(tmp_path) -> Config:
    return Config(
        upload_folder=tmp_path / "upload",
        max_upload_size=1024,
        configure_notifications=False,
    )


@pytest.fixture
def redis_client():
    """Isolated in-memory Redis per test"""
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    yield client
    client.close()


@pytest.fixture
def blobs(cfg) -> BlobStore:
    store = BlobStore(cfg.upload_folder)
    store.ensure_root()
    return store


@pytest.fixture
def meta(redis_client, cfg) -> MetadataStore:
    return MetadataStore(redis_client, cfg.key_prefix)


@pytest.fixture
def lifecycle(meta, blobs, cfg) -> Lifecycle:
    return Lifecycle(meta, blobs, cfg.max_upload_size)


@pytest.fixture
def client(cfg, lifecycle):
    app = create_app(cfg, lifecycle)
    app.config["TESTING"] = True
    with app.test_client() as c:
        yield c


def upload_form(name, content=b"file_content", quota="1", life="3600", filename="file_name.txt"):
    form = {"name": name, "file": (io.BytesIO(content), filename)}
    if quota is not None:
        form["quota"] = quota
    if life is not None:
        form["life"] = life
    return form


def wait_until(predicate, timeout=3.0, interval=0.05) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
