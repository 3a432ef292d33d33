"""Holder list traversal, treasury designation and snapshot diffing"""

import logging
from collections.abc import Iterable
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from decimal import Decimal

from hedera_analyzer.datasources.mirror_node import MirrorNodeDatasource
from hedera_analyzer.exceptions import Error
from hedera_analyzer.models import Holder
from hedera_analyzer.models import HolderDiff
from hedera_analyzer.models import TokenInfo
from hedera_analyzer.retry import DelayGrowth
from hedera_analyzer.retry import RetryPolicy

BALANCE_EPSILON = Decimal('1e-8')

_logger = logging.getLogger(__name__)


@dataclass
class HoldersResult:
    """Holders fetched so far; `error` is set when pagination was aborted"""

    holders: list[Holder] = field(default_factory=list)
    pages: int = 0
    error: Error | None = None

    @property
    def partial(self) -> bool:
        return self.error is not None


def holder_retry_policy(retry_count: int, retry_sleep: float) -> RetryPolicy:
    return RetryPolicy(
        retry_count=retry_count,
        base_delay=retry_sleep,
        growth=DelayGrowth.linear,
    )


async def fetch_all_holders(
    datasource: MirrorNodeDatasource,
    token_info: TokenInfo,
    policy: RetryPolicy,
    strict: bool = False,
) -> HoldersResult:
    """Follow `links.next` until the last page of balances.

    Every page request is retried by `policy`. When retries are exhausted the holders fetched so far are
    returned with `error` set; in strict mode the error is raised instead.
    """
    token_id = token_info.token_id
    result = HoldersResult()
    next_link: str | None = None

    while True:
        try:
            balances, next_link = await policy.call(datasource.get_balances, token_id, next_link)
        except Error as e:
            if strict:
                raise
            _logger.error(
                '%s: holders fetch aborted after %s pages, keeping %s holders: %s',
                token_id,
                result.pages,
                len(result.holders),
                e,
            )
            result.error = e
            break

        result.pages += 1
        result.holders.extend(Holder.from_json(b, token_info.decimals) for b in balances)
        _logger.info('%s: page %s, %s holders total', token_id, result.pages, len(result.holders))
        if not next_link:
            break

    designate_treasury(result.holders)
    return result


def designate_treasury(holders: Iterable[Holder]) -> Holder | None:
    """Mark the holder with the maximum raw balance as treasury; on ties the first one wins"""
    treasury: Holder | None = None
    for holder in holders:
        holder.is_treasury = False
        if treasury is None or holder.balance > treasury.balance:
            treasury = holder
    if treasury is not None:
        treasury.is_treasury = True
    return treasury


def diff_holders(current: Iterable[Holder], previous: Mapping[str, Decimal]) -> HolderDiff:
    """Classify holders against the previous snapshot of formatted balances"""
    diff = HolderDiff()
    for holder in current:
        if holder.account not in previous:
            diff.new.append(holder)
        elif abs(holder.formatted_balance - previous[holder.account]) > BALANCE_EPSILON:
            diff.changed.append(holder)
        else:
            diff.unchanged.append(holder)
    return diff
