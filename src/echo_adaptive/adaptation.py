"""Interaction mode adaptation.

Rapid off-target tapping is read as frustration: after enough misses in
quick succession the feed switches to voice-assist, a large-target,
voice-driven presentation. Separately, a time-of-day check raises the
sundowning flag so the presentation can restrict itself to calming content.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, time as dtime
from typing import Callable, Optional

from .logging_utils import get_logger


logger = get_logger(__name__)

SENSITIVITY_THRESHOLDS: dict[str, int] = {
    "low": 5,
    "medium": 3,
    "high": 2,
}
DEFAULT_SENSITIVITY = "medium"

MISS_WINDOW_SECONDS = 2.0
SUNDOWNING_CHECK_SECONDS = 60.0

NORMAL = "normal"
VOICE_ASSIST = "voice_assist"

VOICE_COMMANDS: dict[str, tuple[str, ...]] = {
    "next": ("next", "skip", "forward"),
    "like": ("like", "love", "heart"),
    "recall": ("recall", "remember", "save"),
}


@dataclass(frozen=True)
class ModeState:
    missed_taps: int
    mode: str

    @property
    def is_voice_mode(self) -> bool:
        return self.mode == VOICE_ASSIST


ModeListener = Callable[[ModeState], None]


def threshold_for(sensitivity: str) -> int:
    """Consecutive qualifying misses needed to enter voice-assist."""
    try:
        return SENSITIVITY_THRESHOLDS[sensitivity]
    except KeyError:
        logger.warning("Unknown tap sensitivity %r, using %s", sensitivity, DEFAULT_SENSITIVITY)
        return SENSITIVITY_THRESHOLDS[DEFAULT_SENSITIVITY]


class InteractionModeMachine:
    """Normal <-> voice-assist state machine driven by tap events."""

    def __init__(
        self,
        sensitivity: str = DEFAULT_SENSITIVITY,
        clock: Callable[[], float] = time.monotonic,
        window: float = MISS_WINDOW_SECONDS,
    ) -> None:
        self.threshold = threshold_for(sensitivity)
        self.window = window
        self._clock = clock
        self._last_tap: Optional[float] = None
        self._missed_taps = 0
        self._mode = NORMAL
        self._listeners: list[ModeListener] = []

    @property
    def state(self) -> ModeState:
        return ModeState(missed_taps=self._missed_taps, mode=self._mode)

    @property
    def missed_taps(self) -> int:
        return self._missed_taps

    @property
    def mode(self) -> str:
        return self._mode

    def subscribe(self, listener: ModeListener) -> None:
        self._listeners.append(listener)

    def register_tap(self, hit_target: bool) -> bool:
        """Record a tap. Returns True if it switched the mode."""
        now = self._clock()
        elapsed = None if self._last_tap is None else now - self._last_tap
        self._last_tap = now

        if hit_target:
            self._missed_taps = 0
            return False

        if elapsed is None or elapsed >= self.window:
            # Isolated tap, not frustrated tapping
            return False

        self._missed_taps += 1
        if self._missed_taps >= self.threshold and self._mode == NORMAL:
            logger.info("Entering voice-assist after %d missed taps", self._missed_taps)
            self._set_mode(VOICE_ASSIST)
            return True
        return False

    def activate_voice_mode(self) -> None:
        """Manual override into voice-assist."""
        if self._mode != VOICE_ASSIST:
            self._set_mode(VOICE_ASSIST)

    def reset_voice_mode(self) -> None:
        """Back to normal after a recognised command or explicit dismissal."""
        changed = self._mode != NORMAL
        self._missed_taps = 0
        self._mode = NORMAL
        if changed:
            self._notify()

    def _set_mode(self, mode: str) -> None:
        self._mode = mode
        self._notify()

    def _notify(self) -> None:
        snapshot = self.state
        for listener in self._listeners:
            listener(snapshot)


def parse_voice_command(transcript: str) -> Optional[str]:
    """Match a spoken transcript to next/like/recall, or None."""
    text = transcript.lower()
    for command, keywords in VOICE_COMMANDS.items():
        if any(word in text for word in keywords):
            return command
    return None


def parse_sundowning_time(value: Optional[str]) -> Optional[dtime]:
    """Parse an HH:MM threshold. Malformed input disables sundowning."""
    if not value:
        return None
    try:
        hours, minutes = value.strip().split(":")
        return dtime(int(hours), int(minutes))
    except ValueError:
        logger.warning("Invalid sundowning time %r, sundowning disabled", value)
        return None


def is_sundowning(now: datetime, threshold: Optional[dtime]) -> bool:
    if threshold is None:
        return False
    return now.time() >= threshold


class SundowningMonitor:
    """Re-evaluates the sundowning flag on a fixed interval.

    The condition depends on the wall clock and sessions are long-lived, so
    it is polled rather than computed once at start.
    """

    def __init__(
        self,
        sundowning_time: Optional[str],
        interval: float = SUNDOWNING_CHECK_SECONDS,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.threshold = parse_sundowning_time(sundowning_time)
        self.interval = min(interval, SUNDOWNING_CHECK_SECONDS)
        self._now = now
        self._active = False
        self._listeners: list[Callable[[bool], None]] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._active

    def subscribe(self, listener: Callable[[bool], None]) -> None:
        self._listeners.append(listener)

    def check(self) -> bool:
        """Recompute the flag now, notifying listeners if it flipped."""
        active = is_sundowning(self._now(), self.threshold)
        if active != self._active:
            self._active = active
            logger.info("Sundowning mode %s", "on" if active else "off")
            for listener in self._listeners:
                listener(active)
        return self._active

    def start(self) -> None:
        self.check()
        if self._task is None and self.threshold is not None:
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.check()
