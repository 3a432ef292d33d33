"""Database backend on Tortoise ORM; rows are upserted by natural key"""

import logging
from collections.abc import AsyncIterator
from collections.abc import Iterable
from contextlib import AsyncExitStack
from contextlib import asynccontextmanager
from decimal import Decimal
from pathlib import Path
from typing import Any

from tortoise import Tortoise
from tortoise.exceptions import BaseORMException
from tortoise.transactions import in_transaction

from hedera_analyzer.config import DatabaseStorageConfig
from hedera_analyzer.exceptions import PersistenceError
from hedera_analyzer.models import Holder
from hedera_analyzer.models import HolderBalance
from hedera_analyzer.models import TokenInfo
from hedera_analyzer.models import TransferRecord
from hedera_analyzer.storage import Storage
from hedera_analyzer.storage import models
from hedera_analyzer.utils import decimal_to_str

_logger = logging.getLogger(__name__)


@asynccontextmanager
async def tortoise_wrapper(url: str) -> AsyncIterator[None]:
    """Initialize Tortoise with storage models, create missing tables, close connections when done"""
    if ':memory' in url:
        _logger.warning('Using in-memory database; data will be lost on exit')
    elif url.startswith('sqlite://'):
        Path(url[len('sqlite://') :]).parent.mkdir(parents=True, exist_ok=True)

    try:
        await Tortoise.init(
            db_url=url,
            modules={'models': ['hedera_analyzer.storage.models']},
        )
        await Tortoise.generate_schemas(safe=True)
        yield
    finally:
        await Tortoise.close_connections()


class DatabaseStorage(Storage):
    def __init__(self, config: DatabaseStorageConfig) -> None:
        self._config = config
        self._exit_stack = AsyncExitStack()

    async def __aenter__(self) -> 'DatabaseStorage':
        try:
            await self._exit_stack.enter_async_context(tortoise_wrapper(self._config.url))
        except (BaseORMException, OSError) as e:
            raise PersistenceError(f'Failed to open database `{self._config.url}`: {e}') from e
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self._exit_stack.aclose()

    async def save_token(self, token_info: TokenInfo) -> None:
        try:
            await models.Token.update_or_create(
                defaults={
                    'name': token_info.name,
                    'symbol': token_info.symbol,
                    'decimals': token_info.decimals,
                    'total_supply': token_info.total_supply,
                    'treasury_account': token_info.treasury_account,
                },
                token_id=token_info.token_id,
            )
        except BaseORMException as e:
            raise PersistenceError(f'Failed to save token `{token_info.token_id}`: {e}') from e

    async def load_token(self, token_id: str) -> TokenInfo | None:
        token = await models.Token.get_or_none(token_id=token_id)
        if token is None:
            return None
        return TokenInfo(
            token_id=token.token_id,
            name=token.name,
            symbol=token.symbol,
            decimals=token.decimals,
            total_supply=token.total_supply,
            treasury_account=token.treasury_account,
        )

    async def save_holders(self, token_info: TokenInfo, holders: Iterable[Holder]) -> None:
        token_id = token_info.token_id
        holders = list(holders)
        try:
            async with in_transaction():
                for holder in holders:
                    await models.Holder.update_or_create(
                        defaults={'balance': decimal_to_str(holder.formatted_balance)},
                        token_id=token_id,
                        account=holder.account,
                    )
                accounts = [h.account for h in holders]
                await models.Holder.filter(token_id=token_id).exclude(account__in=accounts).delete()
                await self._update_treasury(token_id)
        except BaseORMException as e:
            raise PersistenceError(f'Failed to save holders of `{token_id}`: {e}') from e
        _logger.info('Upserted %s holders of `%s`', len(holders), token_id)

    async def _update_treasury(self, token_id: str) -> None:
        # NOTE: Balances are stored as strings, so ordering is done here
        rows = await models.Holder.filter(token_id=token_id).order_by('id')
        treasury = max(rows, key=lambda row: Decimal(row.balance), default=None)
        await models.Holder.filter(token_id=token_id, is_treasury=True).update(is_treasury=False)
        if treasury is not None:
            await models.Holder.filter(id=treasury.id).update(is_treasury=True)

    async def load_holders(self, token_id: str) -> list[HolderBalance] | None:
        rows = await models.Holder.filter(token_id=token_id).order_by('id')
        if not rows:
            return None
        return [HolderBalance(row.account, Decimal(row.balance), row.is_treasury) for row in rows]

    async def save_transfers(self, token_info: TokenInfo, transfers: list[TransferRecord]) -> int:
        token_id = token_info.token_id
        created_count = 0
        try:
            async with in_transaction():
                for transfer in transfers:
                    _, created = await models.Transfer.update_or_create(
                        defaults={
                            'timestamp': transfer.timestamp,
                            'sender_account': transfer.sender_account,
                            'sender_amount': decimal_to_str(transfer.sender_amount),
                            'receiver_account': transfer.receiver_account,
                            'receiver_amount': decimal_to_str(transfer.receiver_amount),
                            'token_symbol': transfer.token_symbol,
                            'memo': transfer.memo,
                            'fee_hbar': decimal_to_str(transfer.fee_hbar),
                        },
                        token_id=token_id,
                        transaction_id=transfer.transaction_id,
                    )
                    created_count += created
        except BaseORMException as e:
            raise PersistenceError(f'Failed to save transfers of `{token_id}`: {e}') from e
        _logger.info('Upserted %s transfers of `%s`, %s new', len(transfers), token_id, created_count)
        return created_count

    async def load_transfers(self, token_id: str) -> list[TransferRecord] | None:
        if not await models.Token.exists(token_id=token_id):
            return None
        rows = await models.Transfer.filter(token_id=token_id).order_by('-timestamp')
        return [
            TransferRecord(
                timestamp=row.timestamp,
                transaction_id=row.transaction_id,
                sender_account=row.sender_account,
                sender_amount=Decimal(row.sender_amount),
                receiver_account=row.receiver_account,
                receiver_amount=Decimal(row.receiver_amount),
                token_symbol=row.token_symbol,
                memo=row.memo,
                fee_hbar=Decimal(row.fee_hbar),
            )
            for row in rows
        ]
