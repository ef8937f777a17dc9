# src/credential_orchestrator/cancellation.py

import asyncio
import logging
from typing import Awaitable, Optional, TypeVar

lib_logger = logging.getLogger('credential_orchestrator')

T = TypeVar("T")


class SessionCancelled(Exception):
    """Raised inside an engine at the first suspension point after cancellation."""
    pass


class CancellationToken:
    """
    Per-session cancellation flag that every engine suspension point goes through.

    The flag is set exactly once. ``sleep`` and ``wait_for`` race their work against
    the flag, so a cancelled engine never waits out a timer or a network call.
    """

    def __init__(self):
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Sets the flag. Returns False if it was already set."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise SessionCancelled()

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> None:
        """Sleeps for ``delay`` seconds, raising SessionCancelled as soon as the flag is set."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=max(0.0, delay))
        except asyncio.TimeoutError:
            return
        raise SessionCancelled()

    async def wait_for(self, aw: Awaitable[T], timeout: Optional[float] = None) -> T:
        """
        Awaits ``aw`` unless the flag is set or ``timeout`` elapses first.

        Raises SessionCancelled on cancellation and asyncio.TimeoutError on timeout.
        In both cases the pending work is cancelled and awaited before returning.
        """
        self.raise_if_cancelled()
        work = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await _cancel_and_wait(work)
            raise
        finally:
            await _cancel_and_wait(waiter)

        if work in done:
            return work.result()

        await _cancel_and_wait(work)
        if waiter in done:
            raise SessionCancelled()
        raise asyncio.TimeoutError()


async def _cancel_and_wait(task: "asyncio.Future") -> None:
    if task.done():
        if not task.cancelled():
            # Retrieve the exception so asyncio doesn't report it as never retrieved
            task.exception()
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        lib_logger.debug(f"Pending work raised while being cancelled: {e}")
