from decimal import Decimal
from typing import Any
from typing import cast

from hedera_analyzer.config import HttpConfig
from hedera_analyzer.datasources import Datasource
from hedera_analyzer.exceptions import InvalidRequestError
from hedera_analyzer.models import MirrorTransactionData
from hedera_analyzer.models import TokenInfo
from hedera_analyzer.utils import decimal_to_str
from hedera_analyzer.utils import validate_token_id

BALANCES_REQUEST_LIMIT = 100
TRANSACTIONS_REQUEST_LIMIT = 100


class MirrorNodeDatasource(Datasource):
    """Hedera mirror node REST API

    Only the three read endpoints needed for holder and transfer analysis are implemented:
    token metadata, paginated token balances and paginated account transactions.
    """

    _default_http_config = HttpConfig(
        request_interval=0.1,
        request_interval_max=5,
        ratelimit_sleep=1,
        ratelimit_sleep_max=30,
    )

    async def get_token_info(self, token_id: str) -> TokenInfo:
        validate_token_id(token_id)
        token_json = await self._get_json(f'tokens/{token_id}')
        return TokenInfo.from_json(token_id, token_json)

    async def get_balances(
        self,
        token_id: str,
        next_link: str | None = None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Get a single page of token balances and a link to the next one, if any"""
        if next_link:
            page_json = await self._get_json(next_link)
        else:
            validate_token_id(token_id)
            page_json = await self._get_json(
                f'tokens/{token_id}/balances',
                params={'limit': BALANCES_REQUEST_LIMIT},
            )

        balances = page_json.get('balances')
        if not isinstance(balances, list):
            raise InvalidRequestError('`balances` field is missing', f'tokens/{token_id}/balances')
        return balances, self._get_next_link(page_json)

    async def get_transactions(
        self,
        account_id: str,
        limit: int,
        after: Decimal | None = None,
        before: Decimal | None = None,
    ) -> list[MirrorTransactionData]:
        """Get a page of account transactions, newest first, strictly between `after` and `before` timestamps"""
        limit = min(limit, TRANSACTIONS_REQUEST_LIMIT)
        params: dict[str, str | int] = {
            'account.id': account_id,
            'limit': limit,
            'order': 'desc',
        }
        # NOTE: Mirror node accepts a single `timestamp` filter per request
        if before is not None:
            params['timestamp'] = f'lt:{decimal_to_str(before)}'
        elif after is not None:
            params['timestamp'] = f'gt:{decimal_to_str(after)}'

        page_json = await self._get_json('transactions', params=params)
        transactions = page_json.get('transactions') or []
        self._logger.debug('%s: %s transactions (%s)', account_id, len(transactions), params.get('timestamp'))
        return [MirrorTransactionData.from_json(tx) for tx in transactions]

    async def _get_json(self, url: str, **kwargs: Any) -> dict[str, Any]:
        response = await self.get(url, **kwargs)
        if not isinstance(response, dict):
            raise InvalidRequestError('Response is not a JSON object', url)
        return cast(dict[str, Any], response)

    @staticmethod
    def _get_next_link(page_json: dict[str, Any]) -> str | None:
        links = page_json.get('links') or {}
        return links.get('next') or None
