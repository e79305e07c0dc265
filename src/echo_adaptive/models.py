"""Persistent records for echo-adaptive: memories, interactions, patient settings."""

from datetime import datetime, timezone
from typing import Literal, Optional

from sqler import SQLerModel, TimestampMixin


MediaType = Literal["photo", "video"]
MemoryStatus = Literal["processing", "needs_review", "approved"]
InteractionType = Literal["like", "recall", "skip", "video_generated"]
Level = Literal["low", "medium", "high"]

MEMORY_STATUSES: tuple[str, ...] = ("processing", "needs_review", "approved")
LEVELS: tuple[str, ...] = ("low", "medium", "high")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored ISO timestamp; naive values are taken as UTC."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Memory(TimestampMixin, SQLerModel):
    """A photo or video shown in the patient feed."""

    _table = "memories"

    patient_id: str
    image_ref: str
    media_type: MediaType = "photo"
    status: MemoryStatus = "processing"

    # Suppression window, ISO-8601 UTC; None means schedulable
    cooldown_until: Optional[str] = None
    engagement_count: int = 0

    # Narration cache, filled lazily by the feed
    script: Optional[str] = None
    audio_url: Optional[str] = None

    # Caregiver metadata
    location: Optional[str] = None
    taken_on: Optional[str] = None
    tags: list[str] = []

    def cooldown_expires(self) -> Optional[datetime]:
        return parse_timestamp(self.cooldown_until)

    def is_cooling_down(self, now: datetime) -> bool:
        expires = self.cooldown_expires()
        return expires is not None and expires > as_utc(now)

    def is_schedulable(self, now: datetime) -> bool:
        """Approved and outside any suppression window."""
        return self.status == "approved" and not self.is_cooling_down(now)

    def age_days(self, now: datetime) -> float:
        if self.created_at is None:
            return 0.0
        delta = as_utc(now) - as_utc(self.created_at)
        return max(delta.total_seconds() / 86400.0, 0.0)


class Interaction(TimestampMixin, SQLerModel):
    """Append-only log entry of a patient action on a memory."""

    _table = "interactions"

    memory_id: int
    patient_id: str
    interaction_type: InteractionType


class PatientSettings(TimestampMixin, SQLerModel):
    """Caregiver-calibrated scheduling settings, one row per patient."""

    _table = "patient_settings"

    patient_id: str
    fixation_cooldown_hours: int = 24
    novelty_weight: Level = "medium"
    tap_sensitivity: Level = "medium"
    sundowning_time: str = "18:00"


def novelty_level_from_slider(value: int) -> str:
    """Map the caregiver's 0-100 novelty slider onto a level."""
    if value < 33:
        return "low"
    if value < 66:
        return "medium"
    return "high"
