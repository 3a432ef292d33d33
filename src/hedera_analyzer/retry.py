"""Retry and backoff policies shared by the gateway and fetchers.

A policy is a (retry count, base delay, delay growth, retryable predicate) tuple. Delays are computed
from the attempt number only, so the same policy object can be reused by many concurrent callers.
"""

import asyncio
import logging
from collections.abc import Awaitable
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from enum import Enum
from typing import Any
from typing import TypeVar

from hedera_analyzer.exceptions import UpstreamError
from hedera_analyzer.exceptions import UpstreamTransientError

_logger = logging.getLogger(__name__)

_T = TypeVar('_T')


class DelayGrowth(Enum):
    constant = 'constant'
    linear = 'linear'
    exponential = 'exponential'


def is_throttling(error: BaseException) -> bool:
    """429 Too Many Requests or 503 Service Unavailable"""
    return isinstance(error, UpstreamTransientError)


def is_upstream_error(error: BaseException) -> bool:
    """Any failed mirror node request, transient or not"""
    return isinstance(error, UpstreamError)


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retry with growing delay

    :param retry_count: Number of retries after the first attempt failed
    :param base_delay: Delay in seconds; multiplied by the attempt number or its power of two depending on `growth`
    :param max_delay: Upper bound for a single delay
    :param growth: How the delay grows with the attempt number
    :param retry_on: Predicate deciding if an exception is worth retrying
    """

    retry_count: int
    base_delay: float
    max_delay: float | None = None
    growth: DelayGrowth = DelayGrowth.exponential
    retry_on: Callable[[BaseException], bool] = field(default=is_upstream_error)

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt`; zero attempt is the base delay"""
        if self.growth == DelayGrowth.constant:
            delay = self.base_delay
        elif self.growth == DelayGrowth.linear:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay * 2**attempt

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return delay

    def should_retry(self, error: BaseException, attempt: int) -> bool:
        return attempt <= self.retry_count and self.retry_on(error)

    async def wait(self, attempt: int, retry_after: float | None = None) -> float:
        delay = self.get_delay(attempt)
        if retry_after:
            delay = max(delay, retry_after)
        await asyncio.sleep(delay)
        return delay

    async def call(
        self,
        fn: Callable[..., Awaitable[_T]],
        *args: Any,
        **kwargs: Any,
    ) -> _T:
        """Await `fn` retrying failures accepted by the policy; the last error is raised as is"""
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except Exception as e:
                attempt += 1
                if not self.should_retry(e, attempt):
                    raise

                retry_after = e.retry_after if isinstance(e, UpstreamTransientError) else None
                delay = self.get_delay(attempt)
                _logger.warning('Attempt %s/%s failed: %s', attempt, self.retry_count + 1, e)
                _logger.info('Waiting %s seconds before retry', max(delay, retry_after or 0))
                await self.wait(attempt, retry_after)
