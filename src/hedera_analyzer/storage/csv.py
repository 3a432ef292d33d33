"""CSV files backend: `<path>/<token>_token_data/<token>_{holders,transactions}.csv`"""

import asyncio
import csv
import logging
from collections.abc import Iterable
from decimal import Decimal
from pathlib import Path

from hedera_analyzer.config import CsvStorageConfig
from hedera_analyzer.exceptions import PersistenceError
from hedera_analyzer.models import HOLDER_COLUMNS
from hedera_analyzer.models import TRANSFER_COLUMNS
from hedera_analyzer.models import Holder
from hedera_analyzer.models import HolderBalance
from hedera_analyzer.models import TokenInfo
from hedera_analyzer.models import TransferRecord
from hedera_analyzer.storage import Storage
from hedera_analyzer.storage import mark_treasury
from hedera_analyzer.utils import decimal_to_str
from hedera_analyzer.utils import validate_token_id

_logger = logging.getLogger(__name__)


class CsvStorage(Storage):
    def __init__(self, config: CsvStorageConfig) -> None:
        self._config = config
        self.appends = config.mode == 'append'

    def get_token_dir(self, token_id: str) -> Path:
        validate_token_id(token_id)
        return self._config.path / f'{token_id}_token_data'

    def get_holders_path(self, token_id: str) -> Path:
        return self.get_token_dir(token_id) / f'{token_id}_holders.csv'

    def get_transfers_path(self, token_id: str) -> Path:
        return self.get_token_dir(token_id) / f'{token_id}_transactions.csv'

    async def save_token(self, token_info: TokenInfo) -> None:
        # NOTE: Token metadata is not persisted in CSV mode
        await asyncio.to_thread(self.get_token_dir(token_info.token_id).mkdir, parents=True, exist_ok=True)

    async def save_holders(self, token_info: TokenInfo, holders: Iterable[Holder]) -> None:
        rows = [(h.account, decimal_to_str(h.formatted_balance)) for h in holders]
        path = self.get_holders_path(token_info.token_id)
        await asyncio.to_thread(self._write, path, HOLDER_COLUMNS, rows, 'w')
        _logger.info('Saved %s holders to `%s`', len(rows), path)

    async def load_holders(self, token_id: str) -> list[HolderBalance] | None:
        rows = await asyncio.to_thread(self._read, self.get_holders_path(token_id))
        if rows is None:
            return None
        try:
            holders = [HolderBalance(row['Account'], self._to_decimal(row['Balance'])) for row in rows]
        except KeyError as e:
            raise PersistenceError(f'Holders file of `{token_id}` has no column {e}') from e
        return mark_treasury(holders)

    async def save_transfers(self, token_info: TokenInfo, transfers: list[TransferRecord]) -> int:
        path = self.get_transfers_path(token_info.token_id)
        if not self.appends:
            await asyncio.to_thread(self._write, path, TRANSFER_COLUMNS, self._to_rows(transfers), 'w')
            _logger.info('Rewrote `%s` with %s transfers', path, len(transfers))
            return len(transfers)

        existing = await self.load_transfers(token_info.token_id) or ()
        seen = {t.transaction_id for t in existing}
        new_transfers = [t for t in transfers if t.transaction_id not in seen]
        if new_transfers or not existing:
            await asyncio.to_thread(self._write, path, TRANSFER_COLUMNS, self._to_rows(new_transfers), 'a')
        _logger.info('Appended %s new transfers to `%s`', len(new_transfers), path)
        return len(new_transfers)

    async def load_transfers(self, token_id: str) -> list[TransferRecord] | None:
        rows = await asyncio.to_thread(self._read, self.get_transfers_path(token_id))
        if rows is None:
            return None
        try:
            return [TransferRecord.from_row(row) for row in rows]
        except (KeyError, ArithmeticError) as e:
            raise PersistenceError(f'Transactions file of `{token_id}` is malformed: {e}') from e

    @staticmethod
    def _to_rows(transfers: Iterable[TransferRecord]) -> list[tuple[str, ...]]:
        return [
            tuple(decimal_to_str(v) if not isinstance(v, str) else v for v in transfer.to_row())
            for transfer in transfers
        ]

    @staticmethod
    def _to_decimal(value: str) -> Decimal:
        try:
            return Decimal(value or 0)
        except ArithmeticError as e:
            raise PersistenceError(f'`{value}` is not a number') from e

    @staticmethod
    def _write(path: Path, header: tuple[str, ...], rows: list[tuple[str, ...]], mode: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            write_header = mode == 'w' or not path.exists() or path.stat().st_size == 0
            with path.open(mode, newline='', encoding='utf-8') as file:
                writer = csv.writer(file)
                if write_header:
                    writer.writerow(header)
                writer.writerows(rows)
        except (OSError, UnicodeError) as e:
            raise PersistenceError(f'Failed to write `{path}`: {e}') from e

    @staticmethod
    def _read(path: Path) -> list[dict[str, str]] | None:
        if not path.is_file():
            return None
        try:
            with path.open(newline='', encoding='utf-8') as file:
                return list(csv.DictReader(file))
        except (OSError, UnicodeError) as e:
            raise PersistenceError(f'Failed to read `{path}`: {e}') from e
