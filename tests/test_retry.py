from unittest.mock import AsyncMock

import pytest

from hedera_analyzer.exceptions import UpstreamFatalError
from hedera_analyzer.exceptions import UpstreamTransientError
from hedera_analyzer.retry import DelayGrowth
from hedera_analyzer.retry import RetryPolicy
from hedera_analyzer.retry import is_throttling

URL = 'http://mirror/api/v1/transactions'


def test_delays() -> None:
    linear = RetryPolicy(retry_count=3, base_delay=2, growth=DelayGrowth.linear)
    assert [linear.get_delay(i) for i in (1, 2, 3)] == [2, 4, 6]

    exponential = RetryPolicy(retry_count=5, base_delay=1, max_delay=5)
    assert [exponential.get_delay(i) for i in range(5)] == [1, 2, 4, 5, 5]

    constant = RetryPolicy(retry_count=1, base_delay=3, growth=DelayGrowth.constant)
    assert constant.get_delay(10) == 3


async def test_call_retries_until_success() -> None:
    fn = AsyncMock(side_effect=[UpstreamFatalError(URL, '500 Internal Server Error', 500), 'ok'])
    policy = RetryPolicy(retry_count=3, base_delay=0)

    assert await policy.call(fn, 'arg', key='value') == 'ok'
    assert fn.await_count == 2
    fn.assert_awaited_with('arg', key='value')


async def test_call_gives_up() -> None:
    error = UpstreamTransientError(URL, 429)
    fn = AsyncMock(side_effect=error)
    policy = RetryPolicy(retry_count=2, base_delay=0, retry_on=is_throttling)

    with pytest.raises(UpstreamTransientError):
        await policy.call(fn)
    assert fn.await_count == 3


async def test_call_skips_not_retryable() -> None:
    policy = RetryPolicy(retry_count=3, base_delay=0, retry_on=is_throttling)

    fn = AsyncMock(side_effect=UpstreamFatalError(URL, '404 Not Found', 404))
    with pytest.raises(UpstreamFatalError):
        await policy.call(fn)
    assert fn.await_count == 1

    fn = AsyncMock(side_effect=ValueError)
    with pytest.raises(ValueError):
        await RetryPolicy(retry_count=3, base_delay=0).call(fn)
    assert fn.await_count == 1
