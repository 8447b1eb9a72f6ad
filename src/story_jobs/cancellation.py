"""Cancellation tokens for cooperative poller shutdown.

A Poller never has its network calls torn down mid-flight: cancelling
the token interrupts the backoff wait immediately, while an in-flight
status call is allowed to finish and its result is then discarded.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

SleepFn = Callable[[float], Awaitable[None]]


@dataclass
class CancellationToken:
    """Mutable token for cooperative cancellation.

    Usage:
        token = CancellationToken()

        while not token.is_cancelled:
            if await token.sleep(delay):
                break
            result = await fetch()
            if token.is_cancelled:
                break  # discard result

        # From the owner:
        token.cancel()
    """

    reason: str | None = None
    _event: asyncio.Event = field(default_factory=asyncio.Event, init=False, repr=False)

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Request cancellation (idempotent)."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        """Block until cancel() is called."""
        await self._event.wait()

    async def sleep(self, delay: float, sleep: SleepFn = asyncio.sleep) -> bool:
        """Wait ``delay`` seconds unless cancelled first.

        Returns:
            True if the token was cancelled before or during the wait.
        """
        if self.is_cancelled:
            return True
        sleeper = asyncio.ensure_future(sleep(delay))
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waiter):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, waiter, return_exceptions=True)
        return self.is_cancelled


__all__ = ["CancellationToken", "SleepFn"]
