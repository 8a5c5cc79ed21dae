"""Typing simulation for outbound messages.

Delays are awaited inside the stream consumption loop, so they also act
as backpressure: a paced session reads from the provider no faster than
it "types".
"""

import asyncio
import random
from typing import Awaitable, Callable

from ..utils.logging import get_logger
from .config import CODE_FENCE, PacingConfig

logger = get_logger(__name__)

SleepFunc = Callable[[float], Awaitable[None]]
ActivitySignal = Callable[[], Awaitable[None]]

# Code segments keep the typing indicator up a little longer
CODE_BLOCK_FLOOR_FACTOR = 1.25
# Thinking pauses stretch a random pause by this factor
THINKING_PAUSE_FACTOR = 1.5


class PacingSimulator:
    """Computes and awaits human-like delays around message delivery."""

    def __init__(
        self,
        config: PacingConfig,
        rng: random.Random | None = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self.config = config
        self._rng = rng or random.Random()
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def typing_delay(self, segment: str) -> float:
        """
        Seconds to "type" a segment before it is sent.

        ``clamp(len * per_char_delay, min_visible_duration, max_typing_time)``,
        raised to 1.25x the minimum for segments containing a code fence.
        Always 0 when pacing is disabled.
        """
        if not self.config.enabled or not segment:
            return 0.0

        delay = min(len(segment) * self.config.per_char_delay, self.config.max_typing_time)
        delay = max(delay, self.config.min_visible_duration)
        if CODE_FENCE in segment:
            delay = max(delay, self.config.min_visible_duration * CODE_BLOCK_FLOOR_FACTOR)
        return delay

    def pause_duration(self) -> tuple[float, bool]:
        """
        Draw a pause to insert between two output chunks.

        Returns:
            (seconds, is_thinking_pause)
        """
        if not self.config.enabled:
            return 0.0, False

        is_thinking = self._rng.random() < self.config.thinking_pause_chance
        pause = self._rng.uniform(self.config.min_pause, self.config.max_pause)
        if is_thinking:
            pause = max(pause * THINKING_PAUSE_FACTOR, self.config.min_visible_duration)
        return pause, is_thinking

    async def simulate_typing(self, segment: str, signal_activity: ActivitySignal) -> float:
        """Show the activity indicator and wait out the typing delay."""
        delay = self.typing_delay(segment)
        if delay <= 0:
            return 0.0
        await signal_activity()
        logger.debug("Simulating typing", delay_ms=round(delay * 1000), chars=len(segment))
        await self._sleep(delay)
        return delay

    async def pause_between_chunks(self, signal_activity: ActivitySignal) -> float:
        """
        Wait between two chunks of one delivery.

        Thinking pauses re-trigger the activity indicator a third of the way in,
        since platform typing indicators expire on their own.
        """
        pause, is_thinking = self.pause_duration()
        if pause <= 0:
            return 0.0

        logger.debug(
            "Pausing between chunks",
            pause_ms=round(pause * 1000),
            thinking=is_thinking,
        )
        if is_thinking:
            await self._sleep(pause / 3)
            await signal_activity()
            await self._sleep(pause - pause / 3)
        else:
            await self._sleep(pause)
        return pause
