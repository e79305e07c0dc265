"""Memory selection and cooldown policy.

Ranking is inverted relative to an engagement-driven feed: memories that
have been seen and liked the least are favoured, and a like pushes the
memory out of the pool for a while instead of pulling it forward.

Score per candidate:

    novelty * (days_old + UNSEEN_BONUS / (1 + engagement))
        - ENGAGEMENT_PENALTY * engagement
        + uniform jitter in [0, JITTER)

The score is used as a sampling weight, not a strict order, so the feed
stays varied while still leaning towards unseen content.
"""

import asyncio
import random
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Iterable, Optional

from tenacity import AsyncRetrying, RetryCallState, stop_after_attempt

from .logging_utils import get_logger
from .models import Memory, utcnow
from .session import FeedSession
from .store import ContentStore, InteractionLog


logger = get_logger(__name__)

NOVELTY_MULTIPLIERS: dict[str, float] = {
    "low": 0.5,
    "medium": 1.0,
    "high": 2.0,
}
ENGAGEMENT_PENALTY = 10.0
UNSEEN_BONUS = 50.0
JITTER = 20.0
MIN_WEIGHT = 1.0

INITIAL_BATCH = 10
TOP_UP_BATCH = 5
TOP_UP_DISTANCE = 3
DEFAULT_COOLDOWN_HOURS = 24

WRITE_ATTEMPTS = 2  # first try plus one retry

Write = Callable[[], Awaitable[object]]


def novelty_multiplier(level: str) -> float:
    try:
        return NOVELTY_MULTIPLIERS[level]
    except KeyError:
        logger.warning("Unknown novelty weight %r, using medium", level)
        return NOVELTY_MULTIPLIERS["medium"]


class SelectionPolicy:
    """Picks the next memories for a session and records engagement.

    Engagement writes are optimistic: local copies are updated at once and
    the store writes run as background tasks, serialised per memory.
    """

    def __init__(
        self,
        store: ContentStore,
        log: InteractionLog,
        patient_id: str,
        novelty_weight: str = "medium",
        cooldown_hours: float = DEFAULT_COOLDOWN_HOURS,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.log = log
        self.patient_id = patient_id
        self.novelty = novelty_multiplier(novelty_weight)
        self.cooldown_hours = cooldown_hours
        self.rng = rng or random.Random()
        self._clock = clock
        self._locks: dict[int, asyncio.Lock] = {}
        self._pending: set[asyncio.Task] = set()

    # -- selection ---------------------------------------------------------

    def score(self, memory: Memory, now: datetime) -> float:
        engagement = memory.engagement_count
        age_bonus = memory.age_days(now) + UNSEEN_BONUS / (1 + engagement)
        return (
            self.novelty * age_bonus
            - ENGAGEMENT_PENALTY * engagement
            + self.rng.random() * JITTER
        )

    def weight(self, memory: Memory, now: datetime) -> float:
        return max(self.score(memory, now), 0.0) + MIN_WEIGHT

    def sample(self, pool: list[Memory], k: int, now: Optional[datetime] = None) -> list[Memory]:
        """Weighted random sample without replacement.

        Each candidate gets the key u ** (1 / weight) and the k largest keys
        win, which draws proportionally to weight at every step.
        """
        if k <= 0 or not pool:
            return []
        now = now or self._clock()
        keyed = [
            (self.rng.random() ** (1.0 / self.weight(m, now)), m)
            for m in pool
        ]
        keyed.sort(key=lambda pair: pair[0], reverse=True)
        return [m for _key, m in keyed[:k]]

    async def next_batch(self, session: FeedSession, k: int) -> list[Memory]:
        """Sample up to k memories not yet materialised in the session.

        Falls back to repeats from the eligible pool once every eligible
        memory has been shown, and to the session's own items when nothing
        is eligible at all. Memories whose session copy is cooling down are
        left out of the pool even if the store has not caught up yet.
        """
        now = self._clock()
        try:
            pool = await self.store.list_eligible(now)
        except Exception as exc:
            logger.warning("Could not fetch candidate pool: %s", exc)
            pool = []

        cooling = {m._id for m in session.sequence if m.is_cooling_down(now)}
        pool = [m for m in pool if m._id not in cooling]

        fresh = [m for m in pool if m._id not in session.shown]
        if fresh:
            return self.sample(fresh, k, now)
        if pool:
            logger.info("All %d eligible memories shown, allowing repeats", len(pool))
            return self._sample_repeats(session, pool, k, now)

        seen: dict[int, Memory] = {}
        for m in session.sequence:
            seen.setdefault(m._id, m)
        if seen:
            logger.info("No eligible memories, repeating from session")
        return self._sample_repeats(session, list(seen.values()), k, now)

    def _sample_repeats(
        self, session: FeedSession, candidates: list[Memory], k: int, now: datetime
    ) -> list[Memory]:
        """Sample repeats without opening on the item the batch follows.

        The current item and the last materialised one are held back and
        only appended when the batch has room to spare.
        """
        held = {session.current_id}
        if session.sequence:
            held.add(session.sequence[-1]._id)
        others = [m for m in candidates if m._id not in held]
        if not others or len(others) == len(candidates):
            return self.sample(candidates, k, now)
        batch = self.sample(others, k, now)
        for m in candidates:
            if len(batch) >= k:
                break
            if m._id in held:
                batch.append(m)
        return batch

    # -- engagement --------------------------------------------------------

    def record_like(self, memory_id: int, local: Iterable[Memory] = ()) -> datetime:
        """Like toggled on: engagement +1 and a fixation cooldown."""
        until = self._clock() + timedelta(hours=self.cooldown_hours)
        for m in local:
            m.engagement_count = m.engagement_count + 1
            m.cooldown_until = until.isoformat()

        self._schedule(memory_id, [
            ("increment engagement", lambda: self.store.increment_engagement(memory_id)),
            ("set cooldown", lambda: self.store.update_cooldown(memory_id, until)),
            ("log like", lambda: self.log.append(memory_id, self.patient_id, "like")),
        ])
        return until

    def record_recall(self, memory_id: int, local: Iterable[Memory] = ()) -> None:
        """Recall toggled on: engagement +1 and a recall log entry."""
        for m in local:
            m.engagement_count = m.engagement_count + 1

        self._schedule(memory_id, [
            ("increment engagement", lambda: self.store.increment_engagement(memory_id)),
            ("log recall", lambda: self.log.append(memory_id, self.patient_id, "recall")),
        ])

    def clear_cooldown(self, memory_id: int, local: Iterable[Memory] = ()) -> None:
        """Not remembered: make the memory schedulable again right away."""
        for m in local:
            m.cooldown_until = None

        self._schedule(memory_id, [
            ("clear cooldown", lambda: self.store.update_cooldown(memory_id, None)),
        ])

    def record_narration(self, memory_id: int, script: str, audio_url: str) -> None:
        """Write generated narration back so later views reuse it."""
        self._schedule(memory_id, [
            ("save narration", lambda: self.store.save_narration(memory_id, script, audio_url)),
        ])

    async def drain(self) -> None:
        """Wait for every background write scheduled so far."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @property
    def pending_writes(self) -> int:
        return len(self._pending)

    def _schedule(self, memory_id: int, writes: list[tuple[str, Write]]) -> None:
        task = asyncio.create_task(self._apply(memory_id, writes))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _apply(self, memory_id: int, writes: list[tuple[str, Write]]) -> None:
        # asyncio.Lock wakes waiters FIFO, keeping one memory's writes in action order
        lock = self._locks.setdefault(memory_id, asyncio.Lock())
        async with lock:
            for description, write in writes:
                await self._attempt(memory_id, description, write)

    async def _attempt(self, memory_id: int, description: str, write: Write) -> bool:
        def log_failure(retry_state: RetryCallState) -> None:
            logger.warning(
                "Failed to %s for memory %s (attempt %d/%d): %s",
                description, memory_id, retry_state.attempt_number, WRITE_ATTEMPTS,
                retry_state.outcome.exception(),
            )

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(WRITE_ATTEMPTS), after=log_failure, reraise=True
            ):
                with attempt:
                    await write()
        except Exception:
            logger.warning("Dropping %s for memory %s", description, memory_id)
            return False
        return True
