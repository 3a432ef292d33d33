from tortoise import fields
from tortoise.models import Model

# NOTE: Amounts are stored as plain decimal strings; token precision is unbounded


class Token(Model):
    token_id = fields.CharField(max_length=64, pk=True)
    name = fields.TextField()
    symbol = fields.TextField()
    decimals = fields.IntField()
    total_supply = fields.TextField()
    treasury_account = fields.CharField(max_length=64, null=True)
    last_analyzed = fields.DatetimeField(auto_now=True)

    class Meta:
        table = 'token'


class Holder(Model):
    id = fields.IntField(pk=True)
    token_id = fields.CharField(max_length=64, db_index=True)
    account = fields.CharField(max_length=64)
    balance = fields.TextField()
    is_treasury = fields.BooleanField(default=False)

    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = 'holder'
        unique_together = (('token_id', 'account'),)


class Transfer(Model):
    id = fields.IntField(pk=True)
    token_id = fields.CharField(max_length=64, db_index=True)
    transaction_id = fields.CharField(max_length=128)
    timestamp = fields.CharField(max_length=32, db_index=True)
    sender_account = fields.CharField(max_length=64)
    sender_amount = fields.TextField()
    receiver_account = fields.CharField(max_length=64)
    receiver_amount = fields.TextField()
    token_symbol = fields.TextField()
    memo = fields.TextField()
    fee_hbar = fields.TextField()

    class Meta:
        table = 'transfer'
        unique_together = (('token_id', 'transaction_id'),)
