"""Tests for the feed database connection and store adapters."""

from datetime import timedelta
from pathlib import Path

import pytest

from echo_adaptive.models import Interaction, Memory, PatientSettings, utcnow
from echo_adaptive.store import (
    ContentStore,
    StoreError,
    close_database,
    get_settings,
    open_database,
)


class TestOpenDatabase:
    def test_binds_every_feed_model(self, db) -> None:
        Memory(patient_id="p1", image_ref="a.jpg").save()
        Interaction(memory_id=1, patient_id="p1", interaction_type="like").save()
        PatientSettings(patient_id="p1", novelty_weight="high").save()

        assert len(Memory.query().all()) == 1
        assert len(Interaction.query().all()) == 1
        assert get_settings("p1").novelty_weight == "high"

    def test_same_path_reuses_connection(self, temp_db_path: str) -> None:
        assert open_database(temp_db_path) is open_database(temp_db_path)

    def test_new_path_reconnects(self, tmp_path: Path) -> None:
        first = open_database(str(tmp_path / "one.db"))
        Memory(patient_id="p1", image_ref="a.jpg").save()

        second = open_database(str(tmp_path / "two.db"))
        try:
            assert second is not first
            assert Memory.query().all() == []
            assert (tmp_path / "two.db").exists()
        finally:
            close_database()

    def test_close_forces_reconnect(self, temp_db_path: str) -> None:
        first = open_database(temp_db_path)
        close_database()
        assert open_database(temp_db_path) is not first

    def test_creates_parent_directory(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "dir" / "feed.db"
        try:
            open_database(str(path))
            assert path.parent.is_dir()
        finally:
            close_database()


class TestContentStore:
    @pytest.mark.anyio
    async def test_missing_memory_raises_store_error(self, store) -> None:
        with pytest.raises(StoreError):
            await store.get(424242)

    @pytest.mark.anyio
    async def test_cooldown_round_trip(self, store, add_memory) -> None:
        memory = add_memory()
        until = utcnow() + timedelta(hours=2)

        await store.update_cooldown(memory._id, until)
        assert Memory.from_id(memory._id).cooldown_expires() == until
        assert await store.list_eligible() == []

        await store.update_cooldown(memory._id, None)
        assert [m._id for m in await store.list_eligible()] == [memory._id]

    @pytest.mark.anyio
    async def test_pool_is_per_patient(self, add_memory, db) -> None:
        add_memory(patient_id="p1")
        theirs = add_memory(patient_id="p2")
        pool = await ContentStore("p2").list_eligible()
        assert [m._id for m in pool] == [theirs._id]

    def test_settings_default_when_unsaved(self, db) -> None:
        settings = get_settings("nobody")
        assert settings.fixation_cooldown_hours == 24
        assert settings.sundowning_time == "18:00"
