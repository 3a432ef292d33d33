"""Analysis run of a single token.

`TokenAnalyzer` walks through `idle -> fetching_token_info -> fetching_holders -> processing_batches` and ends
in `completed` or `failed`. Holders are processed in batches; transactions of batch members are fetched
concurrently, and the transfer log is persisted after every batch.
"""

import asyncio
import time
from decimal import Decimal

from hedera_analyzer.config import AnalysisConfig
from hedera_analyzer.datasources.mirror_node import MirrorNodeDatasource
from hedera_analyzer.exceptions import Error
from hedera_analyzer.holders import diff_holders
from hedera_analyzer.holders import fetch_all_holders
from hedera_analyzer.holders import holder_retry_policy
from hedera_analyzer.models import AnalysisResult
from hedera_analyzer.models import AnalysisStats
from hedera_analyzer.models import AnalysisStatus
from hedera_analyzer.models import Holder
from hedera_analyzer.models import HolderDiff
from hedera_analyzer.models import TokenInfo
from hedera_analyzer.models import TransferRecord
from hedera_analyzer.prometheus import Metrics
from hedera_analyzer.storage import Storage
from hedera_analyzer.transfers import fetch_account_transfers
from hedera_analyzer.transfers import transfer_retry_policy
from hedera_analyzer.utils import FormattedLogger
from hedera_analyzer.utils import split_by_chunks
from hedera_analyzer.utils import validate_token_id

SECONDS_IN_DAY = 24 * 60 * 60


class TokenAnalyzer:
    def __init__(
        self,
        token_id: str,
        datasource: MirrorNodeDatasource,
        storage: Storage,
        config: AnalysisConfig,
        stats: AnalysisStats | None = None,
    ) -> None:
        self._token_id = validate_token_id(token_id)
        self._datasource = datasource
        self._storage = storage
        self._config = config
        self._status = AnalysisStatus.idle
        self._stats = stats or AnalysisStats()
        self._logger = FormattedLogger(__name__, token_id + ': {}')

        http_config = datasource.http_config
        self._holder_policy = holder_retry_policy(http_config.retry_count, http_config.retry_sleep)
        self._transfer_policy = transfer_retry_policy(
            http_config.retry_count,
            http_config.ratelimit_sleep,
            http_config.ratelimit_sleep_max,
        )

    @property
    def status(self) -> AnalysisStatus:
        return self._status

    @property
    def stats(self) -> AnalysisStats:
        return self._stats

    def _set_status(self, status: AnalysisStatus) -> None:
        self._logger.debug('%s -> %s', self._status.value, status.value)
        self._status = status

    async def run(self) -> AnalysisResult:
        try:
            result = await self._run()
        except BaseException:
            self._stats.finish()
            self._set_status(AnalysisStatus.failed)
            Metrics.set_run_finished(AnalysisStatus.failed.value)
            raise

        self._stats.finish()
        self._set_status(AnalysisStatus.completed)
        Metrics.set_run_finished(AnalysisStatus.completed.value)
        self._logger.info(
            'Analysis completed in %.2f s: %s holders, %s transfers',
            result.elapsed_time,
            result.holders,
            result.transfers,
        )
        return result

    async def _run(self) -> AnalysisResult:
        self._set_status(AnalysisStatus.fetching_token_info)
        token_info = await self._holder_policy.call(self._datasource.get_token_info, self._token_id)
        self._logger.info('Token `%s` (%s), %s decimals', token_info.name, token_info.symbol, token_info.decimals)
        await self._storage.save_token(token_info)

        self._set_status(AnalysisStatus.fetching_holders)
        previous_balances = await self._storage.load_previous_balances(self._token_id)
        holders_result = await fetch_all_holders(
            self._datasource,
            token_info,
            self._holder_policy,
            strict=self._config.strict,
        )
        holders = holders_result.holders
        if holders_result.error and not holders:
            raise holders_result.error

        self._stats.update_holders(len(holders))
        diff: HolderDiff | None = None
        if previous_balances:
            diff = diff_holders(holders, previous_balances)
            self._logger.info('Holders: %s new, %s changed, %s unchanged', *diff.summary().values())
        await self._storage.save_holders(token_info, holders)

        self._set_status(AnalysisStatus.processing_batches)
        window_start = await self._get_window_start()
        transfers, new_transfers = await self._process_batches(token_info, holders, window_start)

        return AnalysisResult(
            token_id=self._token_id,
            holders=len(holders),
            transfers=len(transfers),
            new_transfers=new_transfers,
            elapsed_time=self._stats.elapsed_time,
            partial=holders_result.partial,
            diff=diff.summary() if diff else None,
        )

    async def _get_window_start(self) -> Decimal:
        window_start = Decimal(int(time.time()) - self._config.window_days * SECONDS_IN_DAY)
        if not (self._config.incremental and self._storage.appends):
            return window_start

        latest = await self._storage.get_latest_timestamp(self._token_id)
        if latest is not None and latest > window_start:
            self._logger.info('Continuing from the latest persisted transfer at %s', latest)
            return latest
        return window_start

    async def _process_batches(
        self,
        token_info: TokenInfo,
        holders: list[Holder],
        window_start: Decimal,
    ) -> tuple[list[TransferRecord], int]:
        batches = list(split_by_chunks(holders, self._config.holder_batch_size))
        self._stats.set_batch_progress(0, len(batches))
        transfers: list[TransferRecord] = []
        new_transfers = 0

        for index, batch in enumerate(batches, start=1):
            self._stats.set_batch_progress(index, len(batches))
            self._logger.info('Processing batch %s/%s (%s holders)', index, len(batches), len(batch))

            results = await asyncio.gather(
                *(self._process_holder(token_info, holder.account, window_start) for holder in batch),
            )
            batch_transfers = [t for result in results for t in result]
            unique = sum(self._stats.add_transaction(t.transaction_id) for t in batch_transfers)
            Metrics.set_transfers_found(self._token_id, unique)
            transfers.extend(batch_transfers)

            # NOTE: Rewriting storage needs the whole log, appending one only the fresh part
            if self._storage.appends:
                new_transfers += await self._storage.save_transfers(token_info, batch_transfers)
            else:
                new_transfers = await self._storage.save_transfers(token_info, transfers)

            if index < len(batches) and self._config.batch_delay:
                await asyncio.sleep(self._config.batch_delay)

        return transfers, new_transfers

    async def _process_holder(self, token_info: TokenInfo, account_id: str, window_start: Decimal) -> list[TransferRecord]:
        try:
            transfers = await fetch_account_transfers(
                self._datasource,
                account_id,
                token_info,
                window_start,
                page_size=self._config.page_size,
                policy=self._transfer_policy,
                strict=self._config.strict,
            )
        except Error as e:
            self._logger.error('Failed to fetch transfers of `%s`: %s', account_id, e)
            return []
        except Exception:
            self._logger.exception('Unexpected error while processing transfers of `%s`', account_id)
            return []
        finally:
            self._stats.increment_processed_holders()
            Metrics.set_holders_processed(self._token_id)

        if transfers:
            self._stats.increment_holders_with_transactions()
        return transfers
