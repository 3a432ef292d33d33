from decimal import Decimal

import pytest
from aiohttp.pytest_plugin import AiohttpClient

from hedera_analyzer.analyzer import TokenAnalyzer
from hedera_analyzer.config import AnalysisConfig
from hedera_analyzer.exceptions import UpstreamFatalError
from hedera_analyzer.models import AnalysisStatus
from hedera_analyzer.models import HolderBalance
from hedera_analyzer.models import TransferRecord
from hedera_analyzer.utils import timestamp_to_iso
from tests import TOKEN_ID
from tests import FakeMirrorNode
from tests import MemoryStorage
from tests import make_transaction
from tests import mirror_node_datasource
from tests import timestamp

TREASURY = '0.0.100'
ALICE = '0.0.200'
BOB = '0.0.300'

BALANCES = [
    [
        {'account': TREASURY, 'balance': 90000},
        {'account': ALICE, 'balance': 7500},
    ],
    [
        {'account': BOB, 'balance': 2500},
    ],
]


def create_node() -> FakeMirrorNode:
    return FakeMirrorNode(
        balance_pages=BALANCES,
        transactions={
            ALICE: [
                make_transaction('tx-2', timestamp(100), [(TREASURY, -5000), (ALICE, 5000)], memo='airdrop', fee=5_000_000),
                make_transaction('tx-1', timestamp(200), [(TREASURY, -2500), (ALICE, 2500)]),
            ],
            BOB: [
                make_transaction('tx-3', timestamp(300), [(TREASURY, -2500), (BOB, 2500)]),
            ],
        },
    )


def create_config(**kwargs: object) -> AnalysisConfig:
    return AnalysisConfig(**{'holder_batch_size': 2, 'batch_delay': 0, **kwargs})  # type: ignore[arg-type]


async def test_analyze(aiohttp_client: AiohttpClient) -> None:
    node = create_node()
    url = await node.serve(aiohttp_client)
    storage = MemoryStorage()

    async with mirror_node_datasource(url) as datasource:
        analyzer = TokenAnalyzer(TOKEN_ID, datasource, storage, create_config())
        assert analyzer.status == AnalysisStatus.idle
        result = await analyzer.run()

    assert analyzer.status == AnalysisStatus.completed
    assert result.holders == 3
    assert result.transfers == 3
    assert result.new_transfers == 3
    assert not result.partial
    assert result.diff is None

    progress = analyzer.stats.get_progress()
    assert progress['holders'] == {'total': 3, 'processed': 3, 'with_transactions': 2, 'progress': 100.0}
    assert progress['transactions'] == {'total': 3}
    assert progress['batches'] == {'current': 2, 'total': 2, 'progress': 100.0}

    assert storage.tokens[TOKEN_ID].symbol == 'TST'
    assert [(h.account, h.balance) for h in storage.holders[TOKEN_ID]] == [
        (TREASURY, Decimal(900)),
        (ALICE, Decimal(75)),
        (BOB, Decimal(25)),
    ]
    # NOTE: Persisted after every batch
    assert storage.saved_batches == [2, 1]

    transfers = {t.transaction_id: t for t in storage.transfers[TOKEN_ID]}
    assert transfers['tx-2'].sender_account == TREASURY
    assert transfers['tx-2'].receiver_amount == Decimal(50)
    assert transfers['tx-2'].memo == 'airdrop'
    assert transfers['tx-2'].fee_hbar == Decimal('0.05')


async def test_analyze_rewrite_mode_saves_whole_log(aiohttp_client: AiohttpClient) -> None:
    url = await create_node().serve(aiohttp_client)
    storage = MemoryStorage(appends=False)

    async with mirror_node_datasource(url) as datasource:
        result = await TokenAnalyzer(TOKEN_ID, datasource, storage, create_config()).run()

    assert storage.saved_batches == [2, 3]
    assert result.new_transfers == 3


async def test_holder_failure_does_not_abort_run(aiohttp_client: AiohttpClient) -> None:
    node = create_node()
    # NOTE: Treasury is the first holder to be processed
    node.fail('transactions', 500)
    url = await node.serve(aiohttp_client)
    storage = MemoryStorage()

    async with mirror_node_datasource(url) as datasource:
        analyzer = TokenAnalyzer(TOKEN_ID, datasource, storage, create_config())
        result = await analyzer.run()

    assert analyzer.status == AnalysisStatus.completed
    assert result.transfers == 3
    assert analyzer.stats.holders_processed == 3


async def test_malformed_transaction_does_not_abort_run(aiohttp_client: AiohttpClient) -> None:
    node = create_node()
    malformed = make_transaction('tx-4', timestamp(50), [(TREASURY, -100), (ALICE, 100)])
    malformed['token_transfers'][1]['amount'] = '5.0'
    node.transactions[ALICE].insert(0, malformed)
    url = await node.serve(aiohttp_client)
    storage = MemoryStorage()

    async with mirror_node_datasource(url) as datasource:
        analyzer = TokenAnalyzer(TOKEN_ID, datasource, storage, create_config())
        result = await analyzer.run()

    assert analyzer.status == AnalysisStatus.completed
    assert analyzer.stats.holders_processed == 3
    # NOTE: Alice's transfers are dropped as a whole, the rest of the run goes on
    assert [t.transaction_id for t in storage.transfers[TOKEN_ID]] == ['tx-3']
    assert result.transfers == 1


async def test_token_info_failure_fails_run(aiohttp_client: AiohttpClient) -> None:
    node = create_node()
    node.fail('token', 404, 404, 404, 404)
    url = await node.serve(aiohttp_client)
    storage = MemoryStorage()

    async with mirror_node_datasource(url) as datasource:
        analyzer = TokenAnalyzer(TOKEN_ID, datasource, storage, create_config())
        with pytest.raises(UpstreamFatalError):
            await analyzer.run()

    assert analyzer.status == AnalysisStatus.failed
    assert not storage.tokens
    assert len(node.requests) == 4


async def test_partial_holders(aiohttp_client: AiohttpClient) -> None:
    node = create_node()
    node.broken_pages.add(1)
    url = await node.serve(aiohttp_client)
    storage = MemoryStorage()

    async with mirror_node_datasource(url) as datasource:
        analyzer = TokenAnalyzer(TOKEN_ID, datasource, storage, create_config())
        result = await analyzer.run()

    assert analyzer.status == AnalysisStatus.completed
    assert result.partial
    assert result.holders == 2
    assert [t.transaction_id for t in storage.transfers[TOKEN_ID]] == ['tx-2', 'tx-1']


async def test_no_holders_fails_run(aiohttp_client: AiohttpClient) -> None:
    node = create_node()
    node.broken_pages.add(0)
    url = await node.serve(aiohttp_client)

    async with mirror_node_datasource(url) as datasource:
        analyzer = TokenAnalyzer(TOKEN_ID, datasource, MemoryStorage(), create_config())
        with pytest.raises(UpstreamFatalError):
            await analyzer.run()

    assert analyzer.status == AnalysisStatus.failed


async def test_incremental_run(aiohttp_client: AiohttpClient) -> None:
    node = create_node()
    url = await node.serve(aiohttp_client)
    storage = MemoryStorage()
    storage.holders[TOKEN_ID] = [
        HolderBalance(TREASURY, Decimal(900)),
        HolderBalance(ALICE, Decimal(50)),
    ]
    latest = timestamp(150)
    storage.transfers[TOKEN_ID] = [
        TransferRecord(
            timestamp=timestamp_to_iso(latest),
            transaction_id='tx-0',
            sender_account=TREASURY,
            sender_amount=Decimal(1),
            receiver_account=ALICE,
            receiver_amount=Decimal(1),
            token_symbol='TST',
            memo='',
            fee_hbar=Decimal(0),
        )
    ]

    async with mirror_node_datasource(url) as datasource:
        result = await TokenAnalyzer(TOKEN_ID, datasource, storage, create_config()).run()

    assert result.diff == {'new': 1, 'changed': 1, 'unchanged': 1}
    assert result.transfers == 1
    assert [t.transaction_id for t in storage.transfers[TOKEN_ID]] == ['tx-0', 'tx-2']

    queries = [query for path, query in node.requests if path.endswith('/transactions')]
    assert {q['timestamp'] for q in queries if q['timestamp'].startswith('gt:')} == {f'gt:{latest.split(".")[0]}'}


async def test_non_incremental_run_refetches_window(aiohttp_client: AiohttpClient) -> None:
    node = create_node()
    url = await node.serve(aiohttp_client)
    storage = MemoryStorage()
    storage.transfers[TOKEN_ID] = []

    async with mirror_node_datasource(url) as datasource:
        result = await TokenAnalyzer(TOKEN_ID, datasource, storage, create_config(incremental=False)).run()

    assert result.transfers == 3
