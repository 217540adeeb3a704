"""Cancellable waits and poll backoff for Slotkeeper loops.

Every sleep in the worker, supervisor and watchdog goes through a
``CancellationToken`` so that a stop request or an abort wakes it at once
instead of waiting out the remaining interval.

``PollBackoff`` computes the delay before the next task poll: the baseline
interval while the store is healthy, doubling per consecutive failure up to a
cap, plus a random jitter that keeps several slots from polling in lockstep.
"""

from __future__ import annotations

import asyncio
import random
from typing import Callable

import structlog

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class CancellationToken:
    """One-shot cancellation signal with an interruptible sleep.

    Tokens can be chained: a child token is cancelled whenever its parent is,
    which lets the worker abort a single session monitor without stopping
    the whole loop, while a full stop still reaches the monitor.
    """

    def __init__(self, parent: CancellationToken | None = None) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None
        self._parent = parent
        self._children: list[CancellationToken] = []
        if parent is not None:
            parent._children.append(self)
            if parent.cancelled:
                self.cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        """Whether cancel() has been called on this token or a parent."""
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Fire the token and every child token. Repeated calls are no-ops."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        """Create a token that is cancelled together with this one."""
        return CancellationToken(parent=self)

    def detach(self) -> None:
        """Unlink this token from its parent once it is no longer needed.

        A detached token keeps its own state but no longer follows the
        parent. Repeated calls are no-ops.
        """
        if self._parent is None:
            return
        self._parent._children.remove(self)
        self._parent = None

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep for up to ``seconds``, returning early on cancellation.

        Args:
            seconds: Maximum time to sleep. Non-positive values only yield.

        Returns:
            True if the full delay elapsed, False if the token fired.
        """
        if self.cancelled:
            return False
        if seconds <= 0:
            await asyncio.sleep(0)
            return not self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return True
        return False


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class PollBackoff:
    """Exponential backoff for the task poll cadence.

    Attributes:
        base_seconds: Delay while the store is healthy.
        max_seconds: Upper bound for the delay before jitter.
        jitter: Fraction of the delay added as uniform random jitter.
        failures: Consecutive failed polls since the last success.
    """

    def __init__(
        self,
        base_seconds: float,
        max_seconds: float,
        jitter: float = 0.1,
        rand: Callable[[], float] = random.random,
    ) -> None:
        self.base_seconds = base_seconds
        self.max_seconds = max(max_seconds, base_seconds)
        self.jitter = jitter
        self.failures = 0
        self._rand = rand

    def record_success(self) -> None:
        """Reset the backoff after a successful poll."""
        if self.failures:
            logger.info("poll_backoff_reset", previous_failures=self.failures)
        self.failures = 0

    def record_failure(self) -> None:
        """Count one more consecutive failed poll."""
        self.failures += 1

    @property
    def current_delay(self) -> float:
        """Delay without jitter for the current failure count."""
        if self.failures == 0:
            return self.base_seconds
        # Cap the exponent so very long outages cannot overflow the float
        exponent = min(self.failures, 32)
        return min(self.base_seconds * (2 ** exponent), self.max_seconds)

    def next_delay(self) -> float:
        """Delay before the next poll, including jitter."""
        delay = self.current_delay
        return delay + delay * self.jitter * self._rand()

    def reconfigure(self, base_seconds: float, max_seconds: float, jitter: float) -> None:
        """Apply new timings, keeping the current failure count."""
        self.base_seconds = base_seconds
        self.max_seconds = max(max_seconds, base_seconds)
        self.jitter = jitter
