"""Persistence of holder snapshots and transfer logs.

Pipeline code talks to the `Storage` interface only; backends are picked by `storage.kind` in config.
"""

from abc import abstractmethod
from collections.abc import Iterable
from contextlib import AbstractAsyncContextManager
from decimal import Decimal
from typing import Any

from hedera_analyzer.config import CsvStorageConfig
from hedera_analyzer.config import DatabaseStorageConfig
from hedera_analyzer.exceptions import DataNotFoundError
from hedera_analyzer.models import Holder
from hedera_analyzer.models import HolderBalance
from hedera_analyzer.models import TokenInfo
from hedera_analyzer.models import TokenSnapshot
from hedera_analyzer.models import TransferRecord
from hedera_analyzer.utils import iso_to_epoch


class Storage(AbstractAsyncContextManager['Storage']):
    #: Whether `save_transfers` keeps previously persisted transfers
    appends = True

    async def __aenter__(self) -> 'Storage':
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None

    @abstractmethod
    async def save_token(self, token_info: TokenInfo) -> None: ...

    @abstractmethod
    async def save_holders(self, token_info: TokenInfo, holders: Iterable[Holder]) -> None:
        """Replace holder snapshot of the token"""

    @abstractmethod
    async def load_holders(self, token_id: str) -> list[HolderBalance] | None:
        """Previous holder snapshot or None if the token was never analyzed"""

    @abstractmethod
    async def save_transfers(self, token_info: TokenInfo, transfers: list[TransferRecord]) -> int:
        """Persist transfers skipping already stored transaction ids; return number of stored records"""

    @abstractmethod
    async def load_transfers(self, token_id: str) -> list[TransferRecord] | None: ...

    async def load_token(self, token_id: str) -> TokenInfo | None:
        return None

    async def load_previous_balances(self, token_id: str) -> dict[str, Decimal]:
        holders = await self.load_holders(token_id) or ()
        return {h.account: h.balance for h in holders}

    async def get_latest_timestamp(self, token_id: str) -> Decimal | None:
        """Epoch seconds of the newest persisted transfer"""
        transfers = await self.load_transfers(token_id)
        if not transfers:
            return None
        return max(iso_to_epoch(t.timestamp) for t in transfers)

    async def load_snapshot(self, token_id: str) -> TokenSnapshot:
        holders = await self.load_holders(token_id)
        transfers = await self.load_transfers(token_id)
        if holders is None or transfers is None:
            raise DataNotFoundError(token_id)
        return TokenSnapshot(
            token_id=token_id,
            holders=holders,
            transfers=transfers,
            token_info=await self.load_token(token_id),
        )


def mark_treasury(holders: list[HolderBalance]) -> list[HolderBalance]:
    """Recompute treasury flag of loaded holders; the first holder with the maximum balance wins"""
    treasury: HolderBalance | None = None
    for holder in holders:
        holder.is_treasury = False
        if treasury is None or holder.balance > treasury.balance:
            treasury = holder
    if treasury is not None:
        treasury.is_treasury = True
    return holders


def create_storage(config: CsvStorageConfig | DatabaseStorageConfig) -> Storage:
    if isinstance(config, DatabaseStorageConfig):
        from hedera_analyzer.storage.database import DatabaseStorage

        return DatabaseStorage(config)

    from hedera_analyzer.storage.csv import CsvStorage

    return CsvStorage(config)
