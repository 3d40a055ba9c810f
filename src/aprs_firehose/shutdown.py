"""Coordinated graceful shutdown."""

import asyncio
import logging
import signal
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar('T')


class ShutdownRequested(Exception):
    """Raised out of a guarded wait once shutdown has been requested."""


class ShutdownCoordinator:
    """
    Translates an interrupt into one cancellation token observed by every task.

    Each long wait in the service goes through ``guard()`` or ``sleep()`` so
    that a shutdown request interrupts it promptly, whatever it is blocked on.
    """

    def __init__(self, grace_period: float = 10.0):
        self.grace_period = grace_period
        self.reason: Optional[str] = None

        self._event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handlers: Dict[int, Any] = {}

    @property
    def is_shutting_down(self) -> bool:
        return self._event.is_set()

    def request_shutdown(self, reason: str = "requested") -> None:
        """Fire the token. Later calls are ignored."""
        if self._event.is_set():
            return
        self.reason = reason
        logger.info(f"Shutdown requested: {reason}")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Await ``factory()`` unless shutdown fires first.

        The awaitable is only created once the token is known to be clear,
        so nothing is left un-awaited when shutdown has already fired.

        Raises:
            ShutdownRequested: if the token fired before the awaitable completed;
                the awaitable is cancelled
        """
        if self._event.is_set():
            raise ShutdownRequested(self.reason)

        task = asyncio.ensure_future(factory())
        stop = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, stop}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            stop.cancel()

        if task.done():
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        raise ShutdownRequested(self.reason)

    async def sleep(self, delay: float) -> None:
        """Sleep for ``delay`` seconds; raises ShutdownRequested if interrupted."""
        await self.guard(lambda: asyncio.sleep(delay))

    def install_signal_handlers(self) -> None:
        """Route SIGINT/SIGTERM to ``request_shutdown`` on the running loop."""
        self._loop = asyncio.get_running_loop()

        def signal_handler(signum, frame):
            name = signal.Signals(signum).name
            self._loop.call_soon_threadsafe(self.request_shutdown, f"signal {name}")

        for sig in (signal.SIGINT, signal.SIGTERM):
            self._previous_handlers[sig] = signal.signal(sig, signal_handler)

    def remove_signal_handlers(self) -> None:
        for sig, handler in self._previous_handlers.items():
            signal.signal(sig, handler)
        self._previous_handlers.clear()

    async def drain(self, tasks: Iterable["asyncio.Task[Any]"], timeout: Optional[float] = None) -> bool:
        """
        Wait for ``tasks`` to finish within the grace period.

        Returns:
            True if every task finished in time, False if stragglers were cancelled
        """
        pending = {task for task in tasks if not task.done()}
        if not pending:
            return True

        timeout = self.grace_period if timeout is None else timeout
        done, pending = await asyncio.wait(pending, timeout=timeout)
        if not pending:
            return True

        names = ", ".join(sorted(task.get_name() for task in pending))
        logger.warning(f"Grace period of {timeout}s expired; cancelling: {names}")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        return False
