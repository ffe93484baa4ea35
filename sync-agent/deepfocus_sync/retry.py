from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, TypeVar

from .errors import RemoteWriteFailure

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    # 1.0 keeps the delay fixed; anything larger backs off exponentially
    multiplier: float = 1.0
    max_delay_seconds: float = 60.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retrying after the given (1-based) failed attempt."""
        delay = self.base_delay_seconds * (self.multiplier ** max(0, attempt - 1))
        return min(delay, self.max_delay_seconds)


class RetryExecutor:
    """
    Runs remote writes under a RetryPolicy.

    Calls sharing an operation key while one is still in flight join that run
    instead of starting their own, so duplicate triggers never double-apply.
    """

    def __init__(self, policy: RetryPolicy | None = None, sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._in_flight: dict[str, asyncio.Future[Any]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def run(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        existing = self._in_flight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight operation %s", key)
            return await asyncio.shield(existing)

        fut: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._in_flight[key] = fut
        try:
            result = await self._attempt(key, operation)
        except asyncio.CancelledError:
            fut.cancel()
            raise
        except Exception as e:
            fut.set_exception(e)
            # Mark retrieved so a future with no joiners does not warn on GC
            fut.exception()
            raise
        else:
            fut.set_result(result)
            return result
        finally:
            self._in_flight.pop(key, None)

    async def _attempt(self, key: str, operation: Callable[[], Awaitable[T]]) -> T:
        attempts = max(1, self.policy.max_attempts)
        last_error: BaseException | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                if attempt >= attempts:
                    break
                delay = self.policy.delay_for(attempt)
                logger.warning("%s failed (attempt %d/%d): %s; retrying in %.1fs", key, attempt, attempts, e, delay)
                await self._sleep(delay)
        logger.error("%s failed after %d attempt(s): %s", key, attempts, last_error)
        raise RemoteWriteFailure(key, attempts, last_error)
