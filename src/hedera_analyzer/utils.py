import base64
import binascii
import logging
import re
import types
from collections.abc import Iterator
from collections.abc import Mapping
from collections.abc import Sequence
from datetime import UTC
from datetime import datetime
from decimal import Decimal
from logging import Logger
from typing import Any
from typing import TypeVar

import orjson

from hedera_analyzer.exceptions import InvalidTokenIdError

TOKEN_ID_REGEX = re.compile(r'^\d+\.\d+\.\d+$')
TINYBARS_IN_HBAR = 10**8

_T = TypeVar('_T')


def validate_token_id(token_id: Any) -> str:
    """Ensure token ID is a `shard.realm.num` string, raise InvalidTokenIdError otherwise"""
    if not isinstance(token_id, str) or not TOKEN_ID_REGEX.fullmatch(token_id):
        raise InvalidTokenIdError(str(token_id))
    return token_id


def format_token_amount(amount: int | str | None, decimals: int | None) -> Decimal:
    """Convert raw token amount to a decimal value shifting the point by `decimals` digits.

    Works on the digit string, so values of any magnitude are converted exactly.
    Returns zero when amount is empty or decimals are unknown.
    """
    if not amount or decimals is None:
        return Decimal(0)

    amount_str = str(amount).strip()
    sign = ''
    if amount_str.startswith(('-', '+')):
        sign, amount_str = amount_str[0].replace('+', ''), amount_str[1:]
    if not amount_str.isdigit():
        raise ValueError(f'Amount must be an integer, got `{amount}`')
    if not decimals:
        return Decimal(sign + amount_str)

    amount_str = amount_str.zfill(decimals + 1)
    integer_part, fraction_part = amount_str[:-decimals], amount_str[-decimals:]
    fraction_part = fraction_part.rstrip('0')
    if fraction_part:
        return Decimal(f'{sign}{integer_part}.{fraction_part}')
    return Decimal(f'{sign}{integer_part}')


def tinybars_to_hbar(fee: int | str | None) -> Decimal:
    return format_token_amount(fee, 8)


def decimal_to_str(value: Decimal) -> str:
    """Plain notation without exponent and trailing zeros"""
    result = format(value, 'f')
    if '.' in result:
        result = result.rstrip('0').rstrip('.')
    if result in ('-0', ''):
        return '0'
    return result


def parse_timestamp(consensus_timestamp: str) -> Decimal:
    """`seconds.nanoseconds` consensus timestamp as exact epoch seconds"""
    return Decimal(consensus_timestamp)


def timestamp_to_iso(consensus_timestamp: str | Decimal) -> str:
    """Consensus timestamp to ISO-8601 UTC string with milliseconds, e.g. `2024-01-01T00:00:00.000Z`"""
    seconds = Decimal(consensus_timestamp)
    dt = datetime.fromtimestamp(int(seconds), tz=UTC)
    millis = int((seconds - int(seconds)) * 1000)
    return dt.strftime('%Y-%m-%dT%H:%M:%S') + f'.{millis:03d}Z'


def iso_to_epoch(value: str) -> Decimal:
    dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    return Decimal(str(dt.timestamp()))


def decode_memo(memo_base64: str | None) -> str:
    if not memo_base64:
        return ''
    try:
        return base64.b64decode(memo_base64).decode(errors='replace')
    except (binascii.Error, ValueError):
        return ''


def split_by_chunks(input_: Sequence[_T], size: int) -> Iterator[Sequence[_T]]:
    i = 0
    while i < len(input_):
        yield input_[i : i + size]
        i += size


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return decimal_to_str(obj)
    raise TypeError


def json_dumps(obj: Any, option: int | None = orjson.OPT_INDENT_2) -> bytes:
    """Smarter json.dumps"""
    return orjson.dumps(
        obj,
        option=option,
        default=_default,
    )


class FormattedLogger(Logger):
    """Logger wrapper with additional formatting"""

    def __init__(self, name: str, fmt: str | None = None) -> None:
        self.logger = logging.getLogger(name)
        self.fmt = fmt

    def __getattr__(self, name: str) -> Any:
        if name == '_log':
            return self._log
        return getattr(self.logger, name)

    def _log(
        self,
        level: int,
        msg: object,
        args: Any,
        exc_info: (
            bool
            | tuple[type[BaseException], BaseException, types.TracebackType | None]
            | tuple[None, None, None]
            | BaseException
            | None
        ) = None,
        extra: Mapping[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
    ) -> None:
        if self.fmt:
            msg = self.fmt.format(msg)
        self.logger._log(level, msg, args, exc_info, extra, stack_info, stacklevel)
