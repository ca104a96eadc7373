"""Raw log records and the typed marketplace events decoded from them."""

import json
from dataclasses import asdict, dataclass, field
from typing import List, Optional, Union


@dataclass(frozen=True)
class RawLog:
    """One log entry as returned by ``eth_getLogs``, normalized to plain types."""

    address: str
    topics: List[str]
    data: str
    block_number: int
    log_index: int
    transaction_hash: str

    @property
    def sort_key(self):
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class DomainEvent:
    block_number: int
    log_index: int
    tx_hash: str

    event_type = 'DomainEvent'

    @property
    def sort_key(self):
        return (self.block_number, self.log_index)

    @property
    def event_key(self) -> str:
        return f"{self.event_type}:{self.block_number}:{self.log_index}"

    def to_payload(self) -> str:
        return json.dumps({'event_type': self.event_type, **asdict(self)}, sort_keys=True)


@dataclass(frozen=True)
class ListingCreatedEvent(DomainEvent):
    listing_id: int = 0
    seller: str = ''
    token_id: int = 0
    kwh_amount: int = 0
    price_per_kwh: int = 0
    grid_zone: Optional[int] = None

    event_type = 'ListingCreated'


@dataclass(frozen=True)
class ListingCancelledEvent(DomainEvent):
    listing_id: int = 0

    event_type = 'ListingCancelled'


@dataclass(frozen=True)
class OrderCreatedEvent(DomainEvent):
    order_id: int = 0
    listing_id: int = 0
    buyer: str = ''
    kwh_amount: int = 0
    total_price: int = 0

    event_type = 'OrderCreated'


@dataclass(frozen=True)
class OrderCompletedEvent(DomainEvent):
    order_id: int = 0
    buyer: Optional[str] = None
    seller: Optional[str] = None
    amount: Optional[int] = None

    event_type = 'OrderCompleted'


MarketplaceEvent = Union[ListingCreatedEvent, ListingCancelledEvent, OrderCreatedEvent, OrderCompletedEvent]

EVENT_TYPES = {
    cls.event_type: cls
    for cls in (ListingCreatedEvent, ListingCancelledEvent, OrderCreatedEvent, OrderCompletedEvent)
}


def event_from_payload(payload: str) -> MarketplaceEvent:
    """Rebuild an event serialized with ``DomainEvent.to_payload``."""
    data = json.loads(payload)
    event_type = data.pop('event_type')
    try:
        cls = EVENT_TYPES[event_type]
    except KeyError:
        raise ValueError(f"Unknown event type in payload: {event_type}") from None
    return cls(**data)


def sort_events(events) -> list:
    return sorted(events, key=lambda e: e.sort_key)


@dataclass
class BatchResult:
    """Outcome counters for one reconciled batch."""

    applied: int = 0
    skipped: int = 0
    deferred: int = 0
    recovered: int = 0
    by_type: dict = field(default_factory=dict)

    def count(self, event: DomainEvent) -> None:
        self.by_type[event.event_type] = self.by_type.get(event.event_type, 0) + 1
