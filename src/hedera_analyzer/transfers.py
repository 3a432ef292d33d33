"""Per-account transaction backfill and matching of token transfer legs into directed transfers"""

import logging
from decimal import Decimal

from hedera_analyzer.datasources.mirror_node import MirrorNodeDatasource
from hedera_analyzer.exceptions import UpstreamTransientError
from hedera_analyzer.models import MirrorTransactionData
from hedera_analyzer.models import TokenInfo
from hedera_analyzer.models import TransferRecord
from hedera_analyzer.retry import DelayGrowth
from hedera_analyzer.retry import RetryPolicy
from hedera_analyzer.retry import is_throttling
from hedera_analyzer.utils import decode_memo
from hedera_analyzer.utils import format_token_amount
from hedera_analyzer.utils import parse_timestamp
from hedera_analyzer.utils import timestamp_to_iso
from hedera_analyzer.utils import tinybars_to_hbar

_logger = logging.getLogger(__name__)


def transfer_retry_policy(retry_count: int, base_delay: float, max_delay: float) -> RetryPolicy:
    """Retry only throttled requests; everything else propagates at once"""
    return RetryPolicy(
        retry_count=retry_count,
        base_delay=base_delay,
        max_delay=max_delay,
        growth=DelayGrowth.exponential,
        retry_on=is_throttling,
    )


def match_transfers(
    transaction: MirrorTransactionData,
    account_id: str,
    token_info: TokenInfo,
) -> list[TransferRecord]:
    """Pair every incoming leg of `account_id` with the first outgoing leg large enough to cover it.

    Receivers are matched independently, so one sender leg can be paired with several receivers.
    Receivers without a qualifying sender are dropped.
    """
    legs = [leg for leg in transaction.token_transfers if leg.token_id == token_info.token_id]
    if not legs:
        return []

    records = []
    for receiver in legs:
        if receiver.account != account_id or receiver.amount <= 0:
            continue

        sender = next((leg for leg in legs if leg.amount < 0 and abs(leg.amount) >= receiver.amount), None)
        if sender is None:
            continue

        records.append(
            TransferRecord(
                timestamp=timestamp_to_iso(transaction.consensus_timestamp),
                transaction_id=transaction.transaction_id,
                sender_account=sender.account,
                sender_amount=format_token_amount(abs(sender.amount), token_info.decimals),
                receiver_account=receiver.account,
                receiver_amount=format_token_amount(receiver.amount, token_info.decimals),
                token_symbol=token_info.symbol,
                memo=decode_memo(transaction.memo_base64),
                fee_hbar=tinybars_to_hbar(transaction.charged_tx_fee),
            )
        )
    return records


async def fetch_account_transfers(
    datasource: MirrorNodeDatasource,
    account_id: str,
    token_info: TokenInfo,
    window_start: Decimal,
    page_size: int,
    policy: RetryPolicy,
    strict: bool = False,
) -> list[TransferRecord]:
    """Walk account transactions newest to oldest down to `window_start` (exclusive) and match transfers.

    Throttled pages are retried by `policy`. Once it gives up the records collected so far are returned,
    or the error is raised in strict mode. Any other error is raised immediately.
    """
    records: list[TransferRecord] = []
    before: Decimal | None = None
    pages = 0

    while True:
        try:
            transactions = await policy.call(
                datasource.get_transactions,
                account_id,
                page_size,
                after=window_start,
                before=before,
            )
        except UpstreamTransientError as e:
            if strict:
                raise
            _logger.warning('%s: giving up after %s pages, keeping %s transfers: %s', account_id, pages, len(records), e)
            break

        if not transactions:
            break
        pages += 1

        for transaction in transactions:
            if parse_timestamp(transaction.consensus_timestamp) <= window_start:
                continue
            records.extend(match_transfers(transaction, account_id, token_info))

        oldest = parse_timestamp(transactions[-1].consensus_timestamp)
        if oldest <= window_start:
            break
        before = oldest

    _logger.debug('%s: %s pages, %s transfers', account_id, pages, len(records))
    return records
