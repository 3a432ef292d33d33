import asyncio
import logging
import platform
import time
from collections import deque
from contextlib import AbstractAsyncContextManager
from contextlib import suppress
from dataclasses import dataclass
from dataclasses import field
from http import HTTPStatus
from json import JSONDecodeError
from typing import Any
from urllib.parse import urlsplit
from urllib.parse import urlunsplit

import aiohttp
import orjson
from aiolimiter import AsyncLimiter

from hedera_analyzer import __version__
from hedera_analyzer.config import ResolvedHttpConfig
from hedera_analyzer.exceptions import FrameworkException
from hedera_analyzer.exceptions import InvalidRequestError
from hedera_analyzer.exceptions import UpstreamFatalError
from hedera_analyzer.exceptions import UpstreamTransientError
from hedera_analyzer.prometheus import Metrics
from hedera_analyzer.retry import DelayGrowth
from hedera_analyzer.retry import RetryPolicy

THROTTLING_STATUSES = (HTTPStatus.TOO_MANY_REQUESTS, HTTPStatus.SERVICE_UNAVAILABLE)


@dataclass
class _PendingRequest:
    method: str
    url: str
    kwargs: dict[str, Any]
    future: asyncio.Future[Any]
    attempts: int = field(default=0)


class HTTPGateway(AbstractAsyncContextManager[None]):
    """Base class for datasources which connect to remote HTTP endpoints"""

    def __init__(self, url: str, http_config: ResolvedHttpConfig) -> None:
        self._http_config = http_config
        self._http = _HTTPGateway(url, self._http_config)

    async def __aenter__(self) -> None:
        """Create underlying aiohttp session"""
        await self._http.__aenter__()

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        """Close underlying aiohttp session"""
        await self._http.__aexit__(exc_type, exc_val, exc_tb)

    async def request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Any:
        """Send arbitrary HTTP request"""
        return await self._http.request(method, url, **kwargs)


class _HTTPGateway(AbstractAsyncContextManager[None]):
    """Wrapper for aiohttp HTTP requests.

    Requests are queued and sent one by one in submission order. The interval between two requests
    and the sleep after a throttling response both double with every 429/503 in a row and drop back
    to the base value after the first successful response.
    """

    def __init__(self, url: str, config: ResolvedHttpConfig) -> None:
        self._logger = logging.getLogger(__name__)
        parsed_url = urlsplit(url)
        self._url = urlunsplit((parsed_url.scheme, parsed_url.netloc, '', '', ''))
        self._alias = config.alias or parsed_url.netloc
        self._path = parsed_url.path.rstrip('/')
        self._config = config
        self._user_agent: str | None = None
        self._ratelimiter = (
            AsyncLimiter(max_rate=config.ratelimit_rate, time_period=config.ratelimit_period)
            if config.ratelimit_rate and config.ratelimit_period
            else None
        )
        self._interval_policy = RetryPolicy(
            retry_count=0,
            base_delay=config.request_interval,
            max_delay=config.request_interval_max,
            growth=DelayGrowth.exponential,
        )
        self._throttling_policy = RetryPolicy(
            retry_count=config.ratelimit_retry_count,
            base_delay=config.ratelimit_sleep,
            max_delay=config.ratelimit_sleep_max,
            growth=DelayGrowth.exponential,
        )
        self._queue: deque[_PendingRequest] = deque()
        self._drain_task: asyncio.Task[None] | None = None
        self._last_request_at = 0.0
        self._errors_in_row = 0
        self.__session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> None:
        """Create underlying aiohttp session"""
        self.__session = aiohttp.ClientSession(
            base_url=self._url,
            json_serialize=lambda *a, **kw: orjson.dumps(*a, **kw).decode(),
            connector=aiohttp.TCPConnector(limit=self._config.connection_limit),
            timeout=aiohttp.ClientTimeout(
                total=self._config.request_timeout,
                connect=self._config.connection_timeout,
            ),
        )

    async def __aexit__(self, exc_type: type[BaseException] | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        """Close underlying aiohttp session"""
        self._logger.debug('Closing gateway session (%s)', self._url)
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._drain_task
        for pending in self._queue:
            pending.future.cancel()
        self._queue.clear()

        if not self.__session:
            raise FrameworkException('Session is not initialized')
        await self.__session.close()

    @property
    def user_agent(self) -> str:
        """Return User-Agent header compiled from aiohttp's one and environment"""
        if self._user_agent is None:
            user_agent_args = (platform.system(), platform.machine())
            user_agent = f'hedera-analyzer/{__version__} ({"; ".join(user_agent_args)})'
            user_agent += ' ' + aiohttp.http.SERVER_SOFTWARE
            self._user_agent = user_agent
        return self._user_agent

    @property
    def errors_in_row(self) -> int:
        """Number of throttling responses since the last successful one"""
        return self._errors_in_row

    @property
    def _session(self) -> aiohttp.ClientSession:
        """Get an aiohttp session from inside of it's context manager"""
        if self.__session is None:
            raise FrameworkException('aiohttp session is not initialized. Wrap with `async with httpgateway_instance`')
        if self.__session.closed:
            raise FrameworkException('aiohttp session is closed')
        return self.__session

    async def _sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)

    async def _wait_interval(self) -> None:
        """Keep minimal interval between requests, longer while upstream is throttling"""
        interval = self._interval_policy.get_delay(self._errors_in_row)
        remaining = interval - (time.monotonic() - self._last_request_at)
        if remaining > 0:
            await self._sleep(remaining)

    async def _drain(self) -> None:
        """Send queued requests one by one until the queue is empty"""
        while self._queue:
            pending = self._queue[0]
            if pending.future.done():
                self._queue.popleft()
                continue

            await self._wait_interval()
            pending.attempts += 1
            self._last_request_at = time.monotonic()
            try:
                result = await self._request(pending.method, pending.url, **pending.kwargs)
            except UpstreamTransientError as e:
                self._errors_in_row += 1
                if pending.attempts > self._throttling_policy.retry_count:
                    self._logger.warning('Giving up after %s throttled attempts: %s', pending.attempts, e)
                    self._reject(e)
                    continue

                delay = self._throttling_policy.get_delay(self._errors_in_row)
                if e.retry_after:
                    delay = max(delay, e.retry_after)
                self._logger.warning(
                    'HTTP %s (%s in a row), waiting %s seconds before retry', e.status, self._errors_in_row, delay
                )
                await self._sleep(delay)
            except Exception as e:
                self._reject(e)
            else:
                self._errors_in_row = 0
                self._queue.popleft()
                if not pending.future.done():
                    pending.future.set_result(result)

    def _reject(self, error: Exception) -> None:
        pending = self._queue.popleft()
        if not pending.future.done():
            pending.future.set_exception(error)

    async def _request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Any:
        """Wrapped aiohttp call with preconfigured headers and ratelimiting"""
        if not url:
            url = self._path or '/'
        elif url.startswith('http'):
            url = url.replace(self._url, '')
        elif not url.startswith(self._path + '/'):
            url = f'{self._path}/{url.lstrip("/")}'

        headers = kwargs.pop('headers', {})
        headers['User-Agent'] = self.user_agent

        params = kwargs.get('params', {})
        params_string = '&'.join(f'{k}={v}' for k, v in params.items())
        separator = '&' if '?' in url else '?'
        request_string = f'{self._url}{url}{separator}{params_string}'.rstrip('?&')
        self._logger.debug('Calling `%s`', request_string)

        if self._ratelimiter:
            await self._ratelimiter.acquire()

        started_at = time.time()
        try:
            async with self._session.request(
                method=method,
                url=url,
                headers=headers,
                raise_for_status=True,
                **kwargs,
            ) as response:
                body = await response.read()
        except aiohttp.ClientResponseError as e:
            Metrics.set_http_error(self._alias, e.status)
            if e.status in THROTTLING_STATUSES:
                retry_after: float | None = None
                # TODO: Parse Retry-After in HTTP-date format
                with suppress(KeyError, TypeError, ValueError):
                    retry_after = float(e.headers['Retry-After'])  # type: ignore[index]
                raise UpstreamTransientError(request_string, e.status, retry_after) from e
            raise UpstreamFatalError(request_string, f'{e.status} {e.message}', e.status) from e
        except (TimeoutError, aiohttp.ClientError) as e:
            Metrics.set_http_error(self._alias, 0)
            raise UpstreamFatalError(request_string, f'{e.__class__.__name__}: {e}') from e

        Metrics.set_http_request(self._alias, time.time() - started_at)

        if response.status == HTTPStatus.NO_CONTENT:
            raise InvalidRequestError('204 No Content', request_string)
        with suppress(JSONDecodeError):
            return orjson.loads(body)
        raise InvalidRequestError('Response is not a JSON', request_string)

    async def request(
        self,
        method: str,
        url: str,
        **kwargs: Any,
    ) -> Any:
        """Queue an HTTP request and wait for its response"""
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._queue.append(_PendingRequest(method, url, kwargs, future))
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain())
        return await future
