"""
Fetch Coordination

Deduplicates concurrent identical work. The first caller for a key starts the
work as a task; later callers for the same key await that same task and
observe the same result or exception.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Generic, Hashable, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar('T')


class FetchCoordinator(Generic[T]):
    """
    Coordinates keyed operations so only one runs per key at a time.

    Holds one in-flight task per key. The task is removed from the registry
    when it finishes, whatever the outcome, so the next caller starts fresh.
    Cancelling a waiter does not cancel the shared task.
    """

    def __init__(self):
        self._in_flight: dict[Hashable, asyncio.Task] = {}

    async def execute(self, key: Hashable, fetch_func: Callable[[], Awaitable[T]]) -> T:
        """
        Run fetch_func for key, or join the run already in progress

        Args:
            key: Identity of the work
            fetch_func: Async function producing the result

        Returns:
            Result of the (possibly shared) run

        Raises:
            Any exception raised by fetch_func
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(fetch_func())
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._release(key, done))
        else:
            logger.debug("Joining in-flight operation for %s", key)

        return await asyncio.shield(task)

    def _release(self, key: Hashable, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        # Mark the exception retrieved when every waiter was cancelled
        if not task.cancelled():
            task.exception()

    def is_fetching(self, key: Hashable | None = None) -> bool:
        """
        Check whether work is in progress

        Args:
            key: Specific key to check, or None for any key
        """
        if key is None:
            return bool(self._in_flight)
        return key in self._in_flight

    def active_keys(self) -> list[Hashable]:
        return list(self._in_flight)

    def __len__(self) -> int:
        return len(self._in_flight)
