import time
from dataclasses import dataclass
from dataclasses import field
from decimal import Decimal
from enum import Enum
from typing import Any

from hedera_analyzer.utils import format_token_amount

TRANSFER_COLUMNS = (
    'Timestamp',
    'Transaction ID',
    'Sender Account',
    'Total Sent Amount',
    'Receiver Account',
    'Receiver Amount',
    'Token Symbol',
    'Memo',
    'Fee (HBAR)',
)
HOLDER_COLUMNS = ('Account', 'Balance')


class AnalysisStatus(Enum):
    idle = 'idle'
    fetching_token_info = 'fetching_token_info'
    fetching_holders = 'fetching_holders'
    processing_batches = 'processing_batches'
    completed = 'completed'
    failed = 'failed'


@dataclass(frozen=True)
class TokenInfo:
    """Token metadata from `/tokens/{id}` endpoint"""

    token_id: str
    name: str
    symbol: str
    decimals: int
    total_supply: str
    treasury_account: str | None = None

    @classmethod
    def from_json(cls, token_id: str, token_json: dict[str, Any]) -> 'TokenInfo':
        return TokenInfo(
            token_id=token_id,
            name=token_json.get('name') or '',
            symbol=token_json.get('symbol') or '',
            decimals=int(token_json.get('decimals') or 0),
            total_supply=str(token_json.get('total_supply') or '0'),
            treasury_account=token_json.get('treasury_account_id'),
        )


@dataclass
class Holder:
    account: str
    balance: int
    formatted_balance: Decimal
    is_treasury: bool = False

    @classmethod
    def from_json(cls, balance_json: dict[str, Any], decimals: int) -> 'Holder':
        balance = int(balance_json.get('balance') or 0)
        return Holder(
            account=balance_json['account'],
            balance=balance,
            formatted_balance=format_token_amount(balance, decimals),
        )


@dataclass(frozen=True)
class TokenTransferLeg:
    """One signed token amount within a transaction"""

    token_id: str
    account: str
    amount: int

    @classmethod
    def from_json(cls, transfer_json: dict[str, Any]) -> 'TokenTransferLeg':
        return TokenTransferLeg(
            token_id=transfer_json['token_id'],
            account=transfer_json['account'],
            amount=int(transfer_json['amount']),
        )


@dataclass(frozen=True)
class MirrorTransactionData:
    """Basic structure for transactions received from mirror node REST API"""

    transaction_id: str
    consensus_timestamp: str
    charged_tx_fee: int = 0
    memo_base64: str | None = None
    token_transfers: tuple[TokenTransferLeg, ...] = ()

    @classmethod
    def from_json(cls, transaction_json: dict[str, Any]) -> 'MirrorTransactionData':
        return MirrorTransactionData(
            transaction_id=transaction_json['transaction_id'],
            consensus_timestamp=transaction_json['consensus_timestamp'],
            charged_tx_fee=int(transaction_json.get('charged_tx_fee') or 0),
            memo_base64=transaction_json.get('memo_base64'),
            token_transfers=tuple(TokenTransferLeg.from_json(t) for t in transaction_json.get('token_transfers') or ()),
        )


@dataclass(frozen=True)
class TransferRecord:
    """Directed token transfer matched from a pair of transaction legs"""

    timestamp: str
    transaction_id: str
    sender_account: str
    sender_amount: Decimal
    receiver_account: str
    receiver_amount: Decimal
    token_symbol: str
    memo: str
    fee_hbar: Decimal

    def to_row(self) -> tuple[str | Decimal, ...]:
        return (
            self.timestamp,
            self.transaction_id,
            self.sender_account,
            self.sender_amount,
            self.receiver_account,
            self.receiver_amount,
            self.token_symbol,
            self.memo,
            self.fee_hbar,
        )

    @classmethod
    def from_row(cls, row: dict[str, str]) -> 'TransferRecord':
        return TransferRecord(
            timestamp=row['Timestamp'],
            transaction_id=row['Transaction ID'],
            sender_account=row['Sender Account'],
            sender_amount=Decimal(row['Total Sent Amount'] or 0),
            receiver_account=row['Receiver Account'],
            receiver_amount=Decimal(row['Receiver Amount'] or 0),
            token_symbol=row['Token Symbol'],
            memo=row['Memo'],
            fee_hbar=Decimal(row['Fee (HBAR)'] or 0),
        )


@dataclass
class AnalysisResult:
    """Outcome of a finished analysis run"""

    token_id: str
    holders: int
    transfers: int
    new_transfers: int
    elapsed_time: float
    partial: bool = False
    diff: dict[str, int] | None = None

    def to_json(self) -> dict[str, Any]:
        return {
            'token_id': self.token_id,
            'holders': self.holders,
            'transfers': self.transfers,
            'new_transfers': self.new_transfers,
            'elapsed_time': round(self.elapsed_time, 2),
            'partial': self.partial,
            'diff': self.diff,
        }


@dataclass
class HolderDiff:
    new: list[Holder] = field(default_factory=list)
    changed: list[Holder] = field(default_factory=list)
    unchanged: list[Holder] = field(default_factory=list)

    def summary(self) -> dict[str, int]:
        return {
            'new': len(self.new),
            'changed': len(self.changed),
            'unchanged': len(self.unchanged),
        }


class AnalysisStats:
    """Progress of a single analysis run; read by status queries while the run is going"""

    def __init__(self) -> None:
        self.started_at = time.monotonic()
        self.finished_at: float | None = None
        self.holders_total = 0
        self.holders_processed = 0
        self.holders_with_transactions = 0
        self.transaction_ids: set[str] = set()
        self.current_batch = 0
        self.total_batches = 0

    def update_holders(self, total: int) -> None:
        self.holders_total = total

    def increment_processed_holders(self) -> None:
        self.holders_processed += 1

    def increment_holders_with_transactions(self) -> None:
        self.holders_with_transactions += 1

    def add_transaction(self, transaction_id: str) -> bool:
        """Count transaction once; return True if it was not seen before"""
        if transaction_id in self.transaction_ids:
            return False
        self.transaction_ids.add(transaction_id)
        return True

    def set_batch_progress(self, current: int, total: int) -> None:
        self.current_batch = current
        self.total_batches = total

    def finish(self) -> None:
        self.finished_at = time.monotonic()

    @property
    def elapsed_time(self) -> float:
        return (self.finished_at or time.monotonic()) - self.started_at

    def get_progress(self) -> dict[str, Any]:
        return {
            'holders': {
                'total': self.holders_total,
                'processed': self.holders_processed,
                'with_transactions': self.holders_with_transactions,
                'progress': round(self.holders_processed / self.holders_total * 100, 2) if self.holders_total else 0,
            },
            'transactions': {
                'total': len(self.transaction_ids),
            },
            'batches': {
                'current': self.current_batch,
                'total': self.total_batches,
                'progress': round(self.current_batch / self.total_batches * 100, 2) if self.total_batches else 0,
            },
            'elapsed_time': round(self.elapsed_time, 2),
        }


@dataclass
class HolderBalance:
    """Persisted holder; only the formatted balance survives a round trip"""

    account: str
    balance: Decimal
    is_treasury: bool = False


@dataclass
class TokenSnapshot:
    """Everything persisted for a token by the last analysis"""

    token_id: str
    holders: list[HolderBalance]
    transfers: list[TransferRecord]
    token_info: TokenInfo | None = None
