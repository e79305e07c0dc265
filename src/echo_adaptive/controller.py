"""Feed controller: wires navigation and patient input to the scheduler.

Every public method that reacts to the patient returns immediately; store
writes, narration and top-ups run as background tasks against the
optimistic local state held in the FeedSession.
"""

import asyncio
import random
import time
from datetime import datetime
from typing import Callable, Optional

from .adaptation import InteractionModeMachine, ModeState, SundowningMonitor, parse_voice_command
from .logging_utils import get_logger
from .models import Memory, PatientSettings, utcnow
from .policy import INITIAL_BATCH, TOP_UP_BATCH, TOP_UP_DISTANCE, SelectionPolicy
from .recall import PROMPT_DELAY_SECONDS, RecallPromptScheduler
from .session import FeedSession
from .store import ContentStore, InteractionLog, Narration, NarrationService


logger = get_logger(__name__)

NARRATION_DELAY_SECONDS = 0.5
DEFAULT_VOICE_ID = "default"


class FeedController:
    """Composition root for one patient viewing session."""

    def __init__(
        self,
        store: ContentStore,
        log: InteractionLog,
        settings: PatientSettings,
        narration: Optional[NarrationService] = None,
        voice_id: str = DEFAULT_VOICE_ID,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utcnow,
        wall_clock: Callable[[], datetime] = datetime.now,
        tap_clock: Callable[[], float] = time.monotonic,
        prompt_delay: float = PROMPT_DELAY_SECONDS,
        narration_delay: float = NARRATION_DELAY_SECONDS,
        sundowning_interval: float = 60.0,
    ) -> None:
        self.log = log
        self.narration = narration
        self.voice_id = voice_id
        self.narration_delay = narration_delay
        self.session = FeedSession(patient_id=settings.patient_id)
        self.policy = SelectionPolicy(
            store,
            log,
            settings.patient_id,
            novelty_weight=settings.novelty_weight,
            cooldown_hours=settings.fixation_cooldown_hours,
            rng=rng,
            clock=clock,
        )
        self.modes = InteractionModeMachine(settings.tap_sensitivity, clock=tap_clock)
        self.sundowning = SundowningMonitor(
            settings.sundowning_time, interval=sundowning_interval, now=wall_clock
        )
        self.sundowning.subscribe(self._on_sundowning)
        self.recall = RecallPromptScheduler(self.session, self.policy, delay=prompt_delay)

        self._narration_timer: Optional[asyncio.Task] = None
        self._generations: set[asyncio.Task] = set()
        self._top_up: Optional[asyncio.Task] = None

    @property
    def current(self) -> Optional[Memory]:
        return self.session.current

    @property
    def mode(self) -> ModeState:
        return self.modes.state

    async def start(self) -> None:
        """Load recall history and the first batch, then show item 0."""
        try:
            recalled = await self.log.list_recalled(self.session.patient_id)
        except Exception as exc:
            logger.warning("Could not load recall history: %s", exc)
            recalled = set()
        self.session.previously_recalled.update(recalled)

        batch = await self.policy.next_batch(self.session, INITIAL_BATCH)
        self.session.extend(batch)
        logger.info("Feed started with %d memories", len(batch))

        self.sundowning.start()
        self._activate()

    # -- navigation ---------------------------------------------------------

    def navigate(self, index: int) -> Optional[Memory]:
        if not self.session.sequence:
            return None
        index = max(0, min(index, len(self.session.sequence) - 1))
        if index != self.session.index:
            self.session.index = index
            self._activate()
        return self.current

    def next(self) -> Optional[Memory]:
        return self.navigate(self.session.index + 1)

    def previous(self) -> Optional[Memory]:
        return self.navigate(self.session.index - 1)

    def _activate(self) -> None:
        """Run whenever the current item changes."""
        self._cancel_narration_timer()
        self.session.narration = None
        memory = self.current
        self.recall.evaluate(memory._id if memory is not None else None)
        self._schedule_narration(memory)
        if self.session.remaining() < TOP_UP_DISTANCE:
            self._request_top_up()

    def _request_top_up(self) -> None:
        if self._top_up is not None and not self._top_up.done():
            return
        self._top_up = asyncio.create_task(self._load_more())

    async def _load_more(self) -> None:
        had_current = self.current is not None
        batch = await self.policy.next_batch(self.session, TOP_UP_BATCH)
        self.session.extend(batch)
        if batch:
            logger.debug("Appended %d memories to the feed", len(batch))
        if not had_current and self.current is not None:
            self._activate()

    # -- narration ----------------------------------------------------------

    def _schedule_narration(self, memory: Optional[Memory]) -> None:
        if memory is None or memory.media_type == "video":
            return
        if memory.script and memory.audio_url:
            self.session.narration = Narration(memory.script, memory.audio_url)
            return
        if self.narration is None:
            return
        self._narration_timer = asyncio.create_task(self._narrate_after_delay(memory))

    async def _narrate_after_delay(self, memory: Memory) -> None:
        await asyncio.sleep(self.narration_delay)
        # Generation itself outlives navigation; only the delay is cancelled
        task = asyncio.create_task(self._generate(memory))
        self._generations.add(task)
        task.add_done_callback(self._generations.discard)

    async def _generate(self, memory: Memory) -> None:
        memory_id = memory._id
        try:
            result = await self.narration.generate(memory_id, memory.image_ref, self.voice_id)
        except Exception as exc:
            logger.warning("Narration failed for memory %s: %s", memory_id, exc)
            return

        for m in self.session.materialized(memory_id):
            m.script = result.script
            m.audio_url = result.audio_url
        self.policy.record_narration(memory_id, result.script, result.audio_url)

        if self.session.current_id != memory_id:
            logger.debug("Narration for memory %s arrived after it was left, not shown", memory_id)
            return
        self.session.narration = result

    def _cancel_narration_timer(self) -> None:
        if self._narration_timer is not None:
            self._narration_timer.cancel()
            self._narration_timer = None

    # -- engagement ---------------------------------------------------------

    def toggle_like(self) -> Optional[bool]:
        """Toggle like on the current item. Returns the new state."""
        memory = self.current
        if memory is None:
            return None
        memory_id = memory._id
        if memory_id in self.session.liked:
            self.session.liked.discard(memory_id)
            return False
        self.session.liked.add(memory_id)
        self.policy.record_like(memory_id, self.session.materialized(memory_id))
        return True

    def toggle_recall(self) -> Optional[bool]:
        """Toggle "I remember this" on the current item. Returns the new state."""
        memory = self.current
        if memory is None:
            return None
        memory_id = memory._id
        if memory_id in self.session.recalled:
            self.session.recalled.discard(memory_id)
            recalled = False
        else:
            self.session.recalled.add(memory_id)
            self.session.previously_recalled.add(memory_id)
            self.policy.record_recall(memory_id, self.session.materialized(memory_id))
            recalled = True
        self.recall.evaluate(memory_id)
        return recalled

    def answer_recall_prompt(self, remembered: bool) -> bool:
        memory_id = self.recall.visible_for
        if memory_id is None:
            return False
        return self.recall.respond(remembered, self.session.materialized(memory_id))

    # -- interaction mode ---------------------------------------------------

    def register_tap(self, hit_target: bool) -> bool:
        return self.modes.register_tap(hit_target)

    def activate_voice_mode(self) -> None:
        self.modes.activate_voice_mode()

    def dismiss_voice_mode(self) -> None:
        self.modes.reset_voice_mode()

    def handle_voice(self, transcript: str) -> Optional[str]:
        """Act on a recognised spoken command and leave voice-assist."""
        command = parse_voice_command(transcript)
        if command is None:
            logger.info("Voice command not recognised: %r", transcript)
            return None
        if command == "next":
            self.next()
        elif command == "like":
            self.toggle_like()
        elif command == "recall":
            self.toggle_recall()
        self.modes.reset_voice_mode()
        return command

    def _on_sundowning(self, active: bool) -> None:
        self.session.sundowning = active

    # -- teardown -----------------------------------------------------------

    async def close(self) -> None:
        """Cancel every timer and wait for pending writes."""
        self.recall.cancel()
        self._cancel_narration_timer()
        tasks = list(self._generations)
        if self._top_up is not None:
            tasks.append(self._top_up)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await self.sundowning.stop()
        await self.policy.drain()
