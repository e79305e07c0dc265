"""Recall prompt scheduling ("Do you remember this?").

A memory the patient recalled in an earlier session gets a confirmation
prompt shortly after it becomes current. "Yes" only dismisses. "No" clears
the memory's cooldown so it comes round again sooner.
"""

import asyncio
from typing import Callable, Iterable, Optional

from .logging_utils import get_logger
from .models import Memory
from .policy import SelectionPolicy
from .session import FeedSession


logger = get_logger(__name__)

PROMPT_DELAY_SECONDS = 1.5


class RecallPromptScheduler:
    """Keeps at most one prompt pending or visible at a time."""

    def __init__(
        self,
        session: FeedSession,
        policy: SelectionPolicy,
        delay: float = PROMPT_DELAY_SECONDS,
        on_change: Optional[Callable[[Optional[int]], None]] = None,
    ) -> None:
        self.session = session
        self.policy = policy
        self.delay = delay
        self._on_change = on_change
        self._timer: Optional[asyncio.Task] = None
        self._visible_for: Optional[int] = None

    @property
    def visible_for(self) -> Optional[int]:
        """Id of the memory the prompt is showing for, if any."""
        return self._visible_for

    @property
    def pending(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def should_prompt(self, memory_id: int) -> bool:
        return (
            memory_id in self.session.previously_recalled
            and memory_id not in self.session.recalled
        )

    def evaluate(self, memory_id: Optional[int]) -> bool:
        """Supersede any earlier prompt and schedule one for this memory.

        Returns True if a prompt was scheduled.
        """
        self.cancel()
        if memory_id is None or not self.should_prompt(memory_id):
            return False
        self._timer = asyncio.create_task(self._show_after_delay(memory_id))
        return True

    def cancel(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._hide()

    def respond(self, remembered: bool, local: Iterable[Memory] = ()) -> bool:
        """Handle the patient's answer. Returns False if no prompt was visible."""
        memory_id = self._visible_for
        if memory_id is None:
            return False
        self._hide()
        if not remembered:
            logger.info("Memory %s not remembered, clearing cooldown", memory_id)
            self.policy.clear_cooldown(memory_id, local)
        return True

    async def _show_after_delay(self, memory_id: int) -> None:
        await asyncio.sleep(self.delay)
        # The current item may have changed without a re-evaluation
        if self.session.current_id != memory_id:
            return
        self._visible_for = memory_id
        if self._on_change is not None:
            self._on_change(memory_id)

    def _hide(self) -> None:
        if self._visible_for is None:
            return
        self._visible_for = None
        if self._on_change is not None:
            self._on_change(None)
