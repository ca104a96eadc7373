"""Database models for the reconciled marketplace mirror and sync state."""

from datetime import datetime
from enum import Enum

from peewee import (
    BigIntegerField,
    BooleanField,
    CharField,
    DatabaseProxy,
    DateTimeField,
    FloatField,
    ForeignKeyField,
    IntegerField,
    Model,
    TextField,
)

# Bound to a concrete database in DatabaseHandler.initialize_database
db = DatabaseProxy()

CHECKPOINT_KEY = 'marketplace'


class UInt256Field(CharField):
    """
    Unsigned 256-bit integer stored as decimal text.

    Numeric column types lose precision above 2**63 on some backends, so
    amounts round-trip through ``str``/``int`` instead.
    """

    def __init__(self, *args, **kwargs):
        kwargs.setdefault('max_length', 78)
        super().__init__(*args, **kwargs)

    def db_value(self, value):
        if value is None:
            return None
        value = int(value)
        if value < 0:
            raise ValueError(f"UInt256Field cannot store negative value {value}")
        return str(value)

    def python_value(self, value):
        if value is None:
            return None
        return int(value)


class AccountRole(str, Enum):
    PRODUCER = 'PRODUCER'
    CONSUMER = 'CONSUMER'
    BOTH = 'BOTH'

    def merge(self, other: "AccountRole") -> "AccountRole":
        """Combine roles; an account never loses a role it already has."""
        if self == other:
            return self
        return AccountRole.BOTH


class ListingStatus(str, Enum):
    ACTIVE = 'ACTIVE'
    CANCELLED = 'CANCELLED'
    DEPLETED = 'DEPLETED'
    # Never stored; derived at read time from expires_at
    EXPIRED = 'EXPIRED'


class OrderStatus(str, Enum):
    PENDING = 'PENDING'
    DELIVERED = 'DELIVERED'
    COMPLETED = 'COMPLETED'
    DISPUTED = 'DISPUTED'
    REFUNDED = 'REFUNDED'

    def can_transition_to(self, target: "OrderStatus") -> bool:
        return target in ORDER_TRANSITIONS[self]


ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.DELIVERED, OrderStatus.COMPLETED, OrderStatus.DISPUTED},
    OrderStatus.DELIVERED: {OrderStatus.COMPLETED, OrderStatus.DISPUTED},
    OrderStatus.DISPUTED: {OrderStatus.REFUNDED},
    OrderStatus.COMPLETED: set(),
    OrderStatus.REFUNDED: set(),
}


class BaseModel(Model):
    class Meta:
        database = db


class Account(BaseModel):
    """Chain address seen as a seller, a buyer or both."""
    address = CharField(primary_key=True, max_length=42)
    role = CharField(max_length=16, choices=[(r.value, r.value) for r in AccountRole])
    display_name = CharField(max_length=100, null=True)
    total_energy_produced = UInt256Field(default=0)
    total_energy_sold = UInt256Field(default=0)
    total_energy_bought = UInt256Field(default=0)
    reputation_score = IntegerField(default=0)
    first_seen_block = BigIntegerField()
    created_at = DateTimeField()

    class Meta:
        table_name = 'accounts'


class GridZone(BaseModel):
    """Static zone reference data, loaded from configuration."""
    zone_id = IntegerField(primary_key=True)
    name = CharField(max_length=100)
    city = CharField(max_length=100, null=True)
    state = CharField(max_length=100, null=True)
    center_lat = FloatField(null=True)
    center_lng = FloatField(null=True)
    base_price_display = CharField(max_length=40, default='0')
    demand_multiplier = CharField(max_length=40, default='1')

    class Meta:
        table_name = 'grid_zones'


class Listing(BaseModel):
    """Mirror of one on-chain sell listing."""
    listing_id = BigIntegerField(primary_key=True)
    seller = ForeignKeyField(Account, field='address', backref='listings', lazy_load=False)
    token_id = UInt256Field()
    kwh_amount = UInt256Field()
    remaining_amount = UInt256Field()
    price_per_kwh = UInt256Field()
    grid_zone = IntegerField(index=True)
    is_active = BooleanField(default=True, index=True)
    status = CharField(max_length=16, default=ListingStatus.ACTIVE.value)
    created_at = DateTimeField(index=True)
    expires_at = DateTimeField(index=True)
    block_number = BigIntegerField()
    log_index = IntegerField()
    tx_hash = CharField(max_length=66)

    class Meta:
        table_name = 'listings'

    def state_at(self, now: datetime) -> ListingStatus:
        """Effective state, with expiry evaluated against the given clock."""
        status = ListingStatus(self.status)
        if status == ListingStatus.ACTIVE and now >= self.expires_at:
            return ListingStatus.EXPIRED
        return status

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.state_at(now) == ListingStatus.ACTIVE


class Order(BaseModel):
    """Mirror of one on-chain purchase against a listing."""
    order_id = BigIntegerField(primary_key=True)
    listing = ForeignKeyField(Listing, field='listing_id', column_name='listing_id',
                              backref='orders', lazy_load=False)
    buyer = ForeignKeyField(Account, field='address', backref='purchases', lazy_load=False)
    seller = ForeignKeyField(Account, field='address', backref='sales', lazy_load=False)
    kwh_amount = UInt256Field()
    price_per_kwh = UInt256Field()
    total_price = UInt256Field()
    platform_fee = UInt256Field(default=0)
    status = CharField(max_length=16, default=OrderStatus.PENDING.value, index=True)
    created_at = DateTimeField()
    completed_at = DateTimeField(null=True)
    block_number = BigIntegerField()
    log_index = IntegerField()
    tx_hash = CharField(max_length=66)

    class Meta:
        table_name = 'orders'


class SyncCheckpoint(BaseModel):
    """Last block whose events were fully reconciled."""
    name = CharField(primary_key=True, max_length=64)
    last_processed_block = BigIntegerField()
    updated_at = DateTimeField()

    class Meta:
        table_name = 'sync_checkpoints'


class DeferredEvent(BaseModel):
    """Event that could not be applied yet (e.g. an order before its listing)."""
    event_key = CharField(primary_key=True, max_length=128)
    event_type = CharField(max_length=32)
    payload = TextField()
    block_number = BigIntegerField(index=True)
    log_index = IntegerField()
    attempts = IntegerField(default=1)
    reason = CharField(max_length=255, null=True)

    class Meta:
        table_name = 'deferred_events'


ALL_MODELS = [Account, GridZone, Listing, Order, SyncCheckpoint, DeferredEvent]
