"""Content store, interaction log and narration contract used by the feed.

The scheduler only sees the async methods here. The sqler calls underneath
are synchronous and fast, so they run inline on the event loop.
"""

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from sqler import SQLerDB
from sqler.query import F

from .config import ensure_db_dir, get_db_path
from .models import Interaction, Memory, PatientSettings, utcnow


FEED_MODELS = (Memory, Interaction, PatientSettings)

_db: Optional[SQLerDB] = None
_db_path: Optional[Path] = None


def open_database(db_path: Optional[str] = None, use_global: bool = False) -> SQLerDB:
    """Open the feed database and bind the feed models to it.

    The connection is reused until the resolved path changes.
    """
    global _db, _db_path

    path = get_db_path(db_path, use_global=use_global)
    if _db is not None and path == _db_path:
        return _db

    ensure_db_dir(path)
    _db = SQLerDB.on_disk(str(path))
    _db_path = path
    for model in FEED_MODELS:
        model.set_db(_db)
    return _db


def close_database() -> None:
    """Forget the open connection; the next open_database reconnects."""
    global _db, _db_path
    _db = None
    _db_path = None


class StoreError(Exception):
    """A record could not be read or written."""


@dataclass(frozen=True)
class Narration:
    script: str
    audio_url: str


class NarrationService(Protocol):
    """Black-box image-to-narration generator (LLM + TTS behind it)."""

    async def generate(self, memory_id: int, image_ref: str, voice_id: str) -> Narration:
        ...


class ContentStore:
    """Memories of one patient, as seen by the scheduler."""

    def __init__(self, patient_id: str) -> None:
        self.patient_id = patient_id

    async def list_eligible(self, now: Optional[datetime] = None) -> list[Memory]:
        """Approved memories whose cooldown is unset or already lapsed."""
        now = now or utcnow()
        approved = Memory.query().filter(F("status") == "approved").all()
        return [
            m for m in approved
            if m.patient_id == self.patient_id and m.is_schedulable(now)
        ]

    async def get(self, memory_id: int) -> Memory:
        memory = Memory.from_id(memory_id)
        if memory is None:
            raise StoreError(f"Memory {memory_id} not found")
        return memory

    async def update_cooldown(self, memory_id: int, until: Optional[datetime]) -> None:
        memory = await self.get(memory_id)
        memory.cooldown_until = until.isoformat() if until else None
        memory.save()

    async def increment_engagement(self, memory_id: int) -> int:
        memory = await self.get(memory_id)
        memory.engagement_count = memory.engagement_count + 1
        memory.save()
        return memory.engagement_count

    async def save_narration(self, memory_id: int, script: str, audio_url: str) -> None:
        memory = await self.get(memory_id)
        memory.script = script
        memory.audio_url = audio_url
        memory.save()


class InteractionLog:
    """Append-only record of likes, recalls and skips."""

    async def append(self, memory_id: int, patient_id: str, interaction_type: str) -> Interaction:
        entry = Interaction(
            memory_id=memory_id,
            patient_id=patient_id,
            interaction_type=interaction_type,
        )
        entry.save()
        return entry

    async def list_recalled(self, patient_id: str) -> set[int]:
        """Ids of every memory the patient has ever marked as recalled."""
        entries = Interaction.query().filter(F("patient_id") == patient_id).all()
        return {e.memory_id for e in entries if e.interaction_type == "recall"}


def get_settings(patient_id: str) -> PatientSettings:
    """Stored settings for a patient, or unsaved defaults."""
    rows = PatientSettings.query().filter(F("patient_id") == patient_id).all()
    if rows:
        return rows[0]
    return PatientSettings(patient_id=patient_id)
