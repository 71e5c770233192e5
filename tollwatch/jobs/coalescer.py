"""Single-flight request coalescing with a read cache of completed results."""
import asyncio
import logging
from typing import Awaitable, Callable, Hashable, Optional

from tollwatch.parse.models import AcquisitionResult

logger = logging.getLogger(__name__)


class RequestCoalescer:
    """
    At most one in-flight acquisition per key.

    Concurrent callers await the same task. A caller that is cancelled stops
    waiting but the shared task runs on for the others. Finished entries leave
    the in-flight map whatever the outcome; successes also land in the read
    cache, which is only emptied by clear().
    """

    def __init__(self):
        self._in_flight: dict[Hashable, asyncio.Task] = {}
        self._results: dict[Hashable, AcquisitionResult] = {}

    async def get_or_start(
        self,
        key: Hashable,
        start: Callable[[], Awaitable[AcquisitionResult]],
    ) -> AcquisitionResult:
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(start())
            self._in_flight[key] = task
            task.add_done_callback(lambda t, k=key: self._settle(k, t))
            logger.debug(f"Started acquisition for {key}")
        else:
            logger.info(f"Joining in-flight acquisition for {key}")
        return await asyncio.shield(task)

    def _settle(self, key: Hashable, task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if task.cancelled():
            logger.warning(f"Acquisition for {key} was cancelled")
            return
        error = task.exception()
        if error is None:
            self._results[key] = task.result()
        else:
            logger.debug(f"Acquisition for {key} failed: {error}")

    def cached(self, key: Hashable) -> Optional[AcquisitionResult]:
        return self._results.get(key)

    def is_in_flight(self, key: Hashable) -> bool:
        return key in self._in_flight

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    def clear(self) -> int:
        """Drop every cached result. In-flight work is left alone."""
        count = len(self._results)
        self._results.clear()
        logger.info(f"Toll notice cache cleared ({count} entries)")
        return count

    def status(self) -> dict:
        return {
            "cache_size": len(self._results),
            "cached_keys": [list(k) if isinstance(k, tuple) else k for k in self._results],
            "in_flight": len(self._in_flight),
        }

    async def shutdown(self) -> None:
        """Wait for in-flight work to finish."""
        tasks = list(self._in_flight.values())
        if tasks:
            logger.info(f"Waiting for {len(tasks)} in-flight acquisition(s)")
            await asyncio.gather(*tasks, return_exceptions=True)
