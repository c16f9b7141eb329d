"""
Retry-with-backoff and in-flight de-duplication for client requests.

Rate limits (429) are always retried, waiting for the server's Retry-After
when it sends one. Transient failures (transport errors, 408, 5xx) are
retried only where the caller opts in, which the API client does for
idempotent reads. Everything else is raised on the first failure.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Dict, Optional, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_rate_limited(error: BaseException) -> bool:
    return getattr(error, "status_code", None) == 429


def is_transient(error: BaseException) -> bool:
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError)):
        return True
    status = getattr(error, "status_code", None)
    # 0 marks a request that never got a reply
    return status is not None and (status == 0 or status == 408 or status >= 500)


class Resilience:
    """
    Runs calls with retry and optional de-duplication.

    `max_retries` counts retries after the first attempt. A `dedupe_key`
    makes concurrent calls with the same key share one underlying call; the
    result is not reused once that call has finished.
    """

    def __init__(
        self,
        max_retries: int = 3,
        min_delay: float = 0.3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        retry_transient: bool = False,
    ):
        self.max_retries = max_retries
        self.min_delay = min_delay
        self.sleep = sleep
        self.retry_transient = retry_transient
        self._in_flight: Dict[str, asyncio.Task] = {}

    def backoff_delay(self, error: BaseException, attempt: int) -> float:
        retry_after = getattr(error, "retry_after", None) if is_rate_limited(error) else None
        if retry_after is not None:
            return max(0.0, float(retry_after))
        return float(2 ** (attempt + 1))

    def _should_retry(self, error: BaseException, retry_transient: bool) -> bool:
        return is_rate_limited(error) or (retry_transient and is_transient(error))

    async def _attempt(self, call: Callable[[], Awaitable[T]], max_retries: int, retry_transient: bool) -> T:
        # Fixed pause before the first attempt smooths bursts of clicks
        if self.min_delay > 0:
            await self.sleep(self.min_delay)

        attempt = 0
        while True:
            try:
                return await call()
            except Exception as e:
                if not self._should_retry(e, retry_transient):
                    raise
                if attempt >= max_retries:
                    logger.error(f"Request failed after {attempt + 1} attempts: {e}")
                    raise
                delay = self.backoff_delay(e, attempt)
                logger.warning(f"Request failed ({e}); retry {attempt + 1}/{max_retries} in {delay:.1f}s")
                await self.sleep(delay)
                attempt += 1

    async def run(
        self,
        call: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
        dedupe_key: Optional[str] = None,
        retry_transient: Optional[bool] = None,
    ) -> T:
        retries = self.max_retries if max_retries is None else max_retries
        transient = self.retry_transient if retry_transient is None else retry_transient

        if dedupe_key is None:
            return await self._attempt(call, retries, transient)

        task = self._in_flight.get(dedupe_key)
        if task is None:
            task = asyncio.ensure_future(self._attempt(call, retries, transient))
            self._in_flight[dedupe_key] = task
            task.add_done_callback(lambda done, key=dedupe_key: self._forget(key, done))
        else:
            logger.debug(f"Joining in-flight request '{dedupe_key}'")
        # One caller giving up must not cancel the call for the others
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"In-flight request '{key}' failed: {task.exception()}")

    def is_in_flight(self, dedupe_key: str) -> bool:
        return dedupe_key in self._in_flight

    async def join(self, dedupe_key: str):
        """Awaits the in-flight call for a key, or returns None when there is none."""
        task = self._in_flight.get(dedupe_key)
        if task is None:
            return None
        return await asyncio.shield(task)

    def cancel(self, dedupe_key: str) -> bool:
        """Cancels the in-flight call for a key, including any pending backoff sleep."""
        task = self._in_flight.pop(dedupe_key, None)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    def cancel_all(self):
        for key in list(self._in_flight):
            self.cancel(key)


_default_resilience = Resilience()


async def with_retry(
    call: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    dedupe_key: Optional[str] = None,
) -> T:
    """Module-level shortcut over a shared Resilience instance."""
    return await _default_resilience.run(call, max_retries=max_retries, dedupe_key=dedupe_key)
