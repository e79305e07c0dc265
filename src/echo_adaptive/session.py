"""Per-viewing-session feed state, owned by the FeedController."""

from dataclasses import dataclass, field
from typing import Optional

from .models import Memory
from .store import Narration


PREFETCH_WINDOW = 3


@dataclass
class FeedSession:
    patient_id: str
    sequence: list[Memory] = field(default_factory=list)
    index: int = 0
    shown: set[int] = field(default_factory=set)
    liked: set[int] = field(default_factory=set)
    recalled: set[int] = field(default_factory=set)
    previously_recalled: set[int] = field(default_factory=set)
    narration: Optional[Narration] = None
    sundowning: bool = False

    @property
    def current(self) -> Optional[Memory]:
        if 0 <= self.index < len(self.sequence):
            return self.sequence[self.index]
        return None

    @property
    def current_id(self) -> Optional[int]:
        memory = self.current
        return memory._id if memory is not None else None

    def extend(self, memories: list[Memory]) -> None:
        self.sequence.extend(memories)
        self.shown.update(m._id for m in memories)

    def remaining(self) -> int:
        """Items after the current one."""
        return max(len(self.sequence) - self.index - 1, 0)

    def upcoming(self, count: int = PREFETCH_WINDOW) -> list[Memory]:
        """The prefetch window: the next few items after the current one."""
        return self.sequence[self.index + 1:self.index + 1 + count]

    def materialized(self, memory_id: int) -> list[Memory]:
        return [m for m in self.sequence if m._id == memory_id]
