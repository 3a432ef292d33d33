import base64
import time
from collections import defaultdict
from collections import deque
from collections.abc import AsyncIterator
from collections.abc import Iterable
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any

import orjson
from aiohttp import web
from aiohttp.pytest_plugin import AiohttpClient

from hedera_analyzer import env
from hedera_analyzer.config import HttpConfig
from hedera_analyzer.config import MirrorNodeConfig
from hedera_analyzer.datasources.mirror_node import MirrorNodeDatasource
from hedera_analyzer.models import Holder
from hedera_analyzer.models import HolderBalance
from hedera_analyzer.models import TokenInfo
from hedera_analyzer.models import TransferRecord
from hedera_analyzer.storage import Storage
from hedera_analyzer.storage import mark_treasury

env.set_test()

TOKEN_ID = '0.0.1234'
API_PREFIX = '/api/v1'


def timestamp(seconds_ago: int, nanos: int = 0) -> str:
    """Consensus timestamp `seconds_ago` seconds before now"""
    return f'{int(time.time()) - seconds_ago}.{nanos:09d}'


def make_transaction(
    transaction_id: str,
    consensus_timestamp: str,
    legs: Iterable[tuple[str, int]],
    token_id: str = TOKEN_ID,
    memo: str | None = None,
    fee: int = 0,
) -> dict[str, Any]:
    return {
        'transaction_id': transaction_id,
        'consensus_timestamp': consensus_timestamp,
        'charged_tx_fee': fee,
        'memo_base64': base64.b64encode(memo.encode()).decode() if memo is not None else None,
        'token_transfers': [{'token_id': token_id, 'account': account, 'amount': amount} for account, amount in legs],
    }


class FakeMirrorNode:
    """In-process mirror node serving a single token"""

    def __init__(
        self,
        token_json: dict[str, Any] | None = None,
        balance_pages: list[list[dict[str, Any]]] | None = None,
        transactions: dict[str, list[dict[str, Any]]] | None = None,
    ) -> None:
        self.token_json = token_json or {'name': 'Test Token', 'symbol': 'TST', 'decimals': '2', 'total_supply': '100000'}
        self.balance_pages = balance_pages or [[]]
        # NOTE: Newest first, like the real thing
        self.transactions = transactions or {}
        self.failures: dict[str, deque[int]] = defaultdict(deque)
        self.broken_pages: set[int] = set()
        self.requests: list[tuple[str, dict[str, str]]] = []

    def fail(self, endpoint: str, *statuses: int) -> None:
        """Respond with given statuses to the next requests to `endpoint` (`token`, `balances` or `transactions`)"""
        self.failures[endpoint].extend(statuses)

    def _check_failure(self, endpoint: str) -> web.Response | None:
        if self.failures[endpoint]:
            return web.Response(status=self.failures[endpoint].popleft(), text='Injected failure')
        return None

    async def _token(self, request: web.Request) -> web.Response:
        self.requests.append((request.path, dict(request.query)))
        if (failure := self._check_failure('token')) is not None:
            return failure
        if request.match_info['token_id'] != TOKEN_ID:
            raise web.HTTPNotFound()
        return web.json_response({'token_id': TOKEN_ID, **self.token_json}, dumps=_dumps)

    async def _balances(self, request: web.Request) -> web.Response:
        self.requests.append((request.path, dict(request.query)))
        if (failure := self._check_failure('balances')) is not None:
            return failure
        page = int(request.query.get('page', 0))
        if page in self.broken_pages:
            return web.Response(status=500, text='Broken page')
        next_link = None
        if page + 1 < len(self.balance_pages):
            next_link = f'{API_PREFIX}/tokens/{TOKEN_ID}/balances?limit=100&page={page + 1}'
        return web.json_response(
            {'balances': self.balance_pages[page], 'links': {'next': next_link}},
            dumps=_dumps,
        )

    async def _transactions(self, request: web.Request) -> web.Response:
        self.requests.append((request.path, dict(request.query)))
        if (failure := self._check_failure('transactions')) is not None:
            return failure
        account_id = request.query['account.id']
        limit = int(request.query.get('limit', 25))
        transactions = self.transactions.get(account_id, [])

        timestamp_filter = request.query.get('timestamp')
        if timestamp_filter:
            operator, value = timestamp_filter.split(':')
            bound = Decimal(value)
            if operator == 'gt':
                transactions = [tx for tx in transactions if Decimal(tx['consensus_timestamp']) > bound]
            else:
                transactions = [tx for tx in transactions if Decimal(tx['consensus_timestamp']) < bound]

        return web.json_response({'transactions': transactions[:limit], 'links': {'next': None}}, dumps=_dumps)

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get(API_PREFIX + '/tokens/{token_id}', self._token)
        app.router.add_get(API_PREFIX + '/tokens/{token_id}/balances', self._balances)
        app.router.add_get(API_PREFIX + '/transactions', self._transactions)
        return app

    async def serve(self, aiohttp_client: AiohttpClient) -> str:
        client = await aiohttp_client(self.create_app())
        return f'http://{client.server.host}:{client.server.port}{API_PREFIX}'


def _dumps(obj: Any) -> str:
    return orjson.dumps(obj).decode()


@asynccontextmanager
async def mirror_node_datasource(url: str, **http: Any) -> AsyncIterator[MirrorNodeDatasource]:
    """Datasource without any delays unless set explicitly"""
    http_config = HttpConfig(
        request_interval=http.pop('request_interval', 0),
        retry_sleep=http.pop('retry_sleep', 0),
        ratelimit_sleep=http.pop('ratelimit_sleep', 0),
        **http,
    )
    datasource = MirrorNodeDatasource(MirrorNodeConfig(url=url, http=http_config))
    async with datasource:
        yield datasource


class MemoryStorage(Storage):
    """Storage keeping everything in dicts"""

    def __init__(self, appends: bool = True) -> None:
        self.appends = appends
        self.tokens: dict[str, TokenInfo] = {}
        self.holders: dict[str, list[HolderBalance]] = {}
        self.transfers: dict[str, list[TransferRecord]] = {}
        self.saved_batches: list[int] = []

    async def save_token(self, token_info: TokenInfo) -> None:
        self.tokens[token_info.token_id] = token_info

    async def load_token(self, token_id: str) -> TokenInfo | None:
        return self.tokens.get(token_id)

    async def save_holders(self, token_info: TokenInfo, holders: Iterable[Holder]) -> None:
        self.holders[token_info.token_id] = [HolderBalance(h.account, h.formatted_balance) for h in holders]

    async def load_holders(self, token_id: str) -> list[HolderBalance] | None:
        holders = self.holders.get(token_id)
        return mark_treasury(holders) if holders is not None else None

    async def save_transfers(self, token_info: TokenInfo, transfers: list[TransferRecord]) -> int:
        self.saved_batches.append(len(transfers))
        if not self.appends:
            self.transfers[token_info.token_id] = list(transfers)
            return len(transfers)

        existing = self.transfers.setdefault(token_info.token_id, [])
        seen = {t.transaction_id for t in existing}
        new_transfers = [t for t in transfers if t.transaction_id not in seen]
        existing.extend(new_transfers)
        return len(new_transfers)

    async def load_transfers(self, token_id: str) -> list[TransferRecord] | None:
        return self.transfers.get(token_id)
