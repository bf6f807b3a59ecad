import os
from typing import List, Optional, Tuple

import pytest
from fastapi.testclient import TestClient

from taggart import create_app
from taggart import catalog
from taggart.config import ConfigStore, Settings, TagAliasGroup
from taggart.database import make_engine, make_session_factory
from taggart.errors import MediaProcessingError
from taggart.lifecycle import LifecycleManager


class FakeMediaProcessor:
    """Moves the temp file into place, optionally pretending to transcode or fail."""

    def __init__(self, warning: Optional[str] = None, fail: bool = False):
        self.warning = warning
        self.fail = fail
        self.calls: List[Tuple[str, str]] = []

    def process(self, temp_path, final_path):
        self.calls.append((temp_path, final_path))
        if self.fail:
            raise MediaProcessingError("ffprobe exited with 1: moov atom not found")
        os.replace(temp_path, final_path)
        return final_path, self.warning


class FakeThumbnailRenderer:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.rendered: List[str] = []
        self.frames: List[Tuple[str, str]] = []

    def render(self, source_path, dest_dir, key):
        if self.fail:
            raise MediaProcessingError("ffmpeg exited with 1")
        os.makedirs(dest_dir, exist_ok=True)
        with open(os.path.join(dest_dir, f"{key}.jpg"), "wb") as f:
            f.write(b"thumb")
        self.rendered.append(key)

    def render_at(self, source_path, dest_dir, key, timestamp):
        self.frames.append((key, timestamp))
        self.render(source_path, dest_dir, key)


@pytest.fixture
def settings(tmp_path) -> Settings:
    upload_dir = tmp_path / "uploads"
    (upload_dir / "thumbnails").mkdir(parents=True)
    return Settings(
        database_path=str(tmp_path / "catalog.db"),
        upload_dir=str(upload_dir),
        items_per_page=10,
        tag_aliases=(TagAliasGroup(category="colour", aliases=("red", "crimson")),),
    )


@pytest.fixture
def engine(settings):
    engine = make_engine(settings.database_url)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = make_session_factory(engine)()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def media_processor() -> FakeMediaProcessor:
    return FakeMediaProcessor()


@pytest.fixture
def thumbnail_renderer() -> FakeThumbnailRenderer:
    return FakeThumbnailRenderer()


@pytest.fixture
def manager(settings, media_processor, thumbnail_renderer) -> LifecycleManager:
    return LifecycleManager(settings, media_processor, thumbnail_renderer)


@pytest.fixture
def add_file(db, settings):
    """Creates a catalogued file on disk, optionally tagged with "category:value" strings."""

    def _add(filename: str, *tags: str, content: bytes = b"data") -> catalog.FileRecord:
        path = settings.storage_path(filename)
        with open(path, "wb") as f:
            f.write(content)
        with catalog.transaction(db):
            record = catalog.insert_file(db, filename, path)
            for raw in tags:
                category, value = raw.split(":", 1)
                tag_id = catalog.get_or_create_tag(db, catalog.get_or_create_category(db, category), value)
                catalog.link_file_tag(db, record.id, tag_id)
        return record

    return _add


@pytest.fixture
def config_store(tmp_path, settings) -> ConfigStore:
    store = ConfigStore(str(tmp_path / "config.json"))
    store.save(settings)
    return store


@pytest.fixture
def client(config_store, media_processor, thumbnail_renderer):
    app = create_app(config_store, media_processor, thumbnail_renderer)
    with TestClient(app) as test_client:
        yield test_client
    app.state.engine.dispose()
