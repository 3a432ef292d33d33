"""Views of persisted token data: plain tables and a transfer graph"""

from decimal import Decimal
from typing import Any

from hedera_analyzer.models import HolderBalance
from hedera_analyzer.models import TokenSnapshot
from hedera_analyzer.models import TransferRecord

MIN_NODE_RADIUS = 5
MAX_NODE_RADIUS = 50


def holder_to_json(holder: HolderBalance) -> dict[str, Any]:
    return {
        'account': holder.account,
        'balance': holder.balance,
        'is_treasury': holder.is_treasury,
    }


def transfer_to_json(transfer: TransferRecord) -> dict[str, Any]:
    return {
        'timestamp': transfer.timestamp,
        'transaction_id': transfer.transaction_id,
        'sender_account': transfer.sender_account,
        'sender_amount': transfer.sender_amount,
        'receiver_account': transfer.receiver_account,
        'receiver_amount': transfer.receiver_amount,
        'token_symbol': transfer.token_symbol,
        'memo': transfer.memo,
        'fee_hbar': transfer.fee_hbar,
    }


def build_table_view(snapshot: TokenSnapshot) -> dict[str, Any]:
    return {
        'holders': [holder_to_json(h) for h in snapshot.holders],
        'transactions': [transfer_to_json(t) for t in snapshot.transfers],
    }


def get_node_radius(balance: Decimal, max_balance: Decimal) -> float:
    """Square root scale from balance domain `[0, max_balance]` to `[MIN_NODE_RADIUS, MAX_NODE_RADIUS]`"""
    if max_balance <= 0:
        return MIN_NODE_RADIUS
    ratio = (balance / max_balance).sqrt()
    return round(float(MIN_NODE_RADIUS + (MAX_NODE_RADIUS - MIN_NODE_RADIUS) * ratio), 2)


def build_graph(snapshot: TokenSnapshot) -> dict[str, Any]:
    """Holders with positive balance as nodes, transfers between them as links, newest first"""
    holders = [h for h in snapshot.holders if h.balance > 0]
    max_balance = max((h.balance for h in holders), default=Decimal(0))
    treasury = next((h.account for h in holders if h.is_treasury), None)

    nodes = [
        {
            'id': holder.account,
            'balance': holder.balance,
            'radius': get_node_radius(holder.balance, max_balance),
            'is_treasury': holder.is_treasury,
        }
        for holder in holders
    ]

    node_ids = {node['id'] for node in nodes}
    transfers = [t for t in snapshot.transfers if t.sender_account in node_ids and t.receiver_account in node_ids]
    transfers.sort(key=lambda t: t.timestamp, reverse=True)
    links = [
        {
            'source': transfer.sender_account,
            'target': transfer.receiver_account,
            'value': transfer.receiver_amount,
            'timestamp': transfer.timestamp,
            'transaction_id': transfer.transaction_id,
            'memo': transfer.memo,
            'involves_treasury': treasury in (transfer.sender_account, transfer.receiver_account),
        }
        for transfer in transfers
    ]

    token_info = snapshot.token_info
    return {
        'nodes': nodes,
        'links': links,
        'metrics': {
            'token_id': snapshot.token_id,
            'symbol': token_info.symbol if token_info else None,
            'total_holders': len(snapshot.holders),
            'total_nodes': len(nodes),
            'total_links': len(links),
            'treasury_account': treasury,
            'total_volume': sum((t.receiver_amount for t in transfers), Decimal(0)),
        },
    }
