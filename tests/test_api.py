from decimal import Decimal

from aiohttp.pytest_plugin import AiohttpClient
from aiohttp.test_utils import TestClient

from hedera_analyzer.api import create_api
from hedera_analyzer.models import HolderBalance
from hedera_analyzer.models import TransferRecord
from hedera_analyzer.runs import RunManager
from tests import TOKEN_ID
from tests import MemoryStorage
from tests.test_runs import BlockingFactory


async def create_client(
    aiohttp_client: AiohttpClient,
    storage: MemoryStorage | None = None,
) -> tuple[TestClient, RunManager, BlockingFactory]:
    factory = BlockingFactory()
    manager = RunManager(factory)  # type: ignore[arg-type]
    app = await create_api(manager, storage or MemoryStorage())
    return await aiohttp_client(app), manager, factory


async def test_analyze_and_status(aiohttp_client: AiohttpClient) -> None:
    client, manager, factory = await create_client(aiohttp_client)

    response = await client.post('/analyze', json={'tokenId': TOKEN_ID})
    assert response.status == 200
    body = await response.json()
    assert body['status'] == 'started'
    assert body['progress']['holders']['total'] == 0

    response = await client.post('/analyze', json={'tokenId': TOKEN_ID})
    body = await response.json()
    assert body['status'] == 'in_progress'
    assert body['progress']['holders']['total'] == 10
    assert len(factory.created) == 1

    response = await client.get('/analyze/ongoing')
    body = await response.json()
    assert [item['tokenId'] for item in body] == [TOKEN_ID]

    response = await client.get(f'/analyze/{TOKEN_ID}/status')
    body = await response.json()
    assert body['status'] == 'processing_batches'

    factory.created[0].release.set()
    await manager.wait(TOKEN_ID)

    response = await client.get(f'/analyze/{TOKEN_ID}/status')
    body = await response.json()
    assert body['status'] == 'completed'
    assert body['result']['token_id'] == TOKEN_ID


async def test_status_not_found(aiohttp_client: AiohttpClient) -> None:
    client, _, _ = await create_client(aiohttp_client)

    response = await client.get('/analyze/0.0.42/status')
    assert response.status == 404
    assert await response.json() == {'status': 'not_found'}


async def test_invalid_requests(aiohttp_client: AiohttpClient) -> None:
    client, _, factory = await create_client(aiohttp_client)

    response = await client.post('/analyze', json={'tokenId': '0.0.abc'})
    assert response.status == 400
    assert 'Token ID is malformed' in (await response.json())['error']

    response = await client.post('/analyze', data=b'not a json')
    assert response.status == 400

    response = await client.post('/analyze', json={'token': TOKEN_ID})
    assert response.status == 400

    response = await client.get('/visualize/abc')
    assert response.status == 400

    assert not factory.created


async def test_visualize(aiohttp_client: AiohttpClient) -> None:
    storage = MemoryStorage()
    client, _, _ = await create_client(aiohttp_client, storage)

    response = await client.get(f'/visualize/{TOKEN_ID}')
    assert response.status == 404
    assert await response.json() == {'error': 'Data not found. Please analyze the token first.'}

    storage.holders[TOKEN_ID] = [
        HolderBalance('0.0.100', Decimal('900.5')),
        HolderBalance('0.0.200', Decimal(25)),
        HolderBalance('0.0.300', Decimal(0)),
    ]
    storage.transfers[TOKEN_ID] = [
        TransferRecord(
            timestamp='2024-01-01T00:00:00.000Z',
            transaction_id='tx-1',
            sender_account='0.0.100',
            sender_amount=Decimal(25),
            receiver_account='0.0.200',
            receiver_amount=Decimal(25),
            token_symbol='TST',
            memo='',
            fee_hbar=Decimal('0.001'),
        )
    ]

    response = await client.get(f'/visualize/{TOKEN_ID}')
    assert response.status == 200
    body = await response.json()
    assert body['holders'][0] == {'account': '0.0.100', 'balance': '900.5', 'is_treasury': True}
    assert body['transactions'][0]['fee_hbar'] == '0.001'

    response = await client.get(f'/visualize/{TOKEN_ID}', params={'format': 'graph'})
    body = await response.json()
    assert [node['id'] for node in body['nodes']] == ['0.0.100', '0.0.200']
    assert body['links'][0]['involves_treasury'] is True
    assert body['metrics']['treasury_account'] == '0.0.100'
    assert body['metrics']['total_links'] == 1
