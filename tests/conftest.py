from __future__ import annotations

import pytest

from services.batch.database import create_session_factory
from services.batch.entry_store import EntryStore
from services.ingestion.storage import LocalImageStore


@pytest.fixture
def session_factory(tmp_path):
    return create_session_factory(f"sqlite:///{tmp_path / 'medpack.db'}")


@pytest.fixture
def store(session_factory):
    return EntryStore(session_factory)


@pytest.fixture
def image_store(tmp_path):
    return LocalImageStore(str(tmp_path / "images"))


