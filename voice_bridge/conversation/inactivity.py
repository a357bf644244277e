"""Caller inactivity detection.

One timer, re-armed after every agent audio turn, escalates through
Idle -> Warned-once -> Warned-twice -> hang-up request. The delay for each
arming depends on how many warnings were already given, so expiries land at
the cumulative thresholds (e.g. 30s, 45s, 60s) after the agent stops talking.

The monitor never talks to the provider itself: an expiry is reported through
``on_expired(generation)`` and the owner calls ``expire(generation)`` from its
own event loop to get the prompt to send. Stale generations (cancelled or
re-armed in the meantime) yield nothing, so a cancelled timer never fires.
"""

import asyncio
from collections.abc import Callable

from voice_bridge.llm.system_prompt import (
    INACTIVITY_FINAL_WARNING,
    INACTIVITY_FIRST_WARNING,
    INACTIVITY_HANGUP,
)
from voice_bridge.utils.logging import get_logger

logger = get_logger(__name__)


class InactivityMonitor:
    def __init__(
        self,
        on_expired: Callable[[int], None],
        first_warning: float = 30.0,
        final_warning: float = 45.0,
        hangup: float = 60.0,
        call_sid: str | None = None,
    ):
        self._on_expired = on_expired
        self._first_warning = first_warning
        self._final_warning = final_warning
        self._hangup = hangup
        self.call_sid = call_sid

        self._warning_count = 0
        self._generation = 0
        self._task: asyncio.Task | None = None

    @property
    def warning_count(self) -> int:
        return self._warning_count

    @property
    def is_armed(self) -> bool:
        return self._task is not None and not self._task.done()

    def next_delay(self) -> float:
        """Seconds until the next expiry, given the warnings already issued."""
        if self._warning_count == 0:
            return self._first_warning
        if self._warning_count == 1:
            return self._final_warning - self._first_warning
        return self._hangup - self._final_warning

    def arm(self) -> None:
        """Start (or restart) the timer after the agent finished an audio turn."""
        self._stop_timer()
        delay = self.next_delay()
        generation = self._generation
        self._task = asyncio.create_task(self._wait(generation, delay))
        logger.debug(
            "inactivity_armed",
            call_sid=self.call_sid,
            warning_count=self._warning_count,
            delay_s=delay,
        )

    def reset(self) -> None:
        """Caller spoke: cancel the timer and forget earlier warnings."""
        self._stop_timer()
        if self._warning_count:
            logger.info("inactivity_reset", call_sid=self.call_sid)
        self._warning_count = 0

    def cancel(self) -> None:
        self._stop_timer()

    def expire(self, generation: int) -> str | None:
        """Consume an expiry; returns the prompt to send, or None if stale."""
        if generation != self._generation:
            return None
        self._generation += 1
        self._task = None
        self._warning_count += 1
        logger.info(
            "inactivity_expired",
            call_sid=self.call_sid,
            warning_count=self._warning_count,
        )
        if self._warning_count == 1:
            return INACTIVITY_FIRST_WARNING
        if self._warning_count == 2:
            return INACTIVITY_FINAL_WARNING
        return INACTIVITY_HANGUP

    def _stop_timer(self) -> None:
        self._generation += 1
        if self._task and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _wait(self, generation: int, delay: float) -> None:
        await asyncio.sleep(delay)
        self._on_expired(generation)
