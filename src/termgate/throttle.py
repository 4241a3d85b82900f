"""Escalating delay after failed password attempts.

Each failure sleeps for the current delay and doubles the delay stored for
the next failure. A success clears it. State is owned by the connection
making the attempts, so one peer guessing passwords only slows itself down.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

INITIAL_DELAY_MS = 1000
MAX_DELAY_MS = 60_000


@dataclass(frozen=True)
class ThrottleState:
    """Delay to apply on the next failure, None when no failure is pending."""

    next_delay_ms: int | None = None

    @property
    def is_unset(self) -> bool:
        return self.next_delay_ms is None


UNSET = ThrottleState()


def delayed(delay_ms: int) -> ThrottleState:
    """State whose next failure sleeps delay_ms."""
    return ThrottleState(next_delay_ms=delay_ms)


async def throttle(
    success: bool,
    state: ThrottleState,
    *,
    initial_delay_ms: int = INITIAL_DELAY_MS,
    max_delay_ms: int = MAX_DELAY_MS,
    sleep: Callable[[float], Awaitable[None]] | None = None,
) -> tuple[bool, ThrottleState]:
    """Apply the failure backoff to one authentication result.

    Args:
        success: Whether the credentials were accepted.
        state: State carried over from the previous attempt.
        initial_delay_ms: Delay for the first failure.
        max_delay_ms: Cap for the stored delay; doubling saturates here.
        sleep: Injectable sleep for testing. Defaults to asyncio.sleep.

    Returns:
        (success, new_state). The result is passed through unchanged.
    """
    if success:
        return True, UNSET

    delay_ms = initial_delay_ms if state.is_unset else state.next_delay_ms
    delay_ms = min(delay_ms, max_delay_ms)

    logger.debug(f"Authentication failed, delaying response {delay_ms}ms")
    await (sleep or asyncio.sleep)(delay_ms / 1000.0)

    return False, delayed(min(delay_ms * 2, max_delay_ms))
