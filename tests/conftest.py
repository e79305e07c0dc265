"""Test fixtures for echo-adaptive."""

from pathlib import Path

import pytest

from echo_adaptive.models import Memory
from echo_adaptive.store import ContentStore, InteractionLog, close_database, open_database


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def temp_db_path(tmp_path: Path) -> str:
    """Return just the path string for --db flag testing."""
    db_path = tmp_path / "test_feed.db"
    yield str(db_path)
    close_database()


@pytest.fixture
def db(temp_db_path: str):
    """An initialised database bound to every model."""
    return open_database(temp_db_path)


@pytest.fixture
def store(db) -> ContentStore:
    return ContentStore("p1")


@pytest.fixture
def log(db) -> InteractionLog:
    return InteractionLog()


@pytest.fixture
def add_memory(db):
    """Factory saving a memory for patient p1 (approved unless told otherwise)."""

    def _add(**fields) -> Memory:
        data = {
            "patient_id": "p1",
            "image_ref": "photos/example.jpg",
            "status": "approved",
        }
        data.update(fields)
        memory = Memory(**data)
        memory.save()
        return memory

    return _add
