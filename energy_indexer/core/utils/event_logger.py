"""
Event logging utilities.

Provides formatted logging for reconciled marketplace events.
"""

from typing import Iterable

from energy_indexer.core.events import (
    BatchResult,
    DomainEvent,
    ListingCancelledEvent,
    ListingCreatedEvent,
    OrderCompletedEvent,
    OrderCreatedEvent,
)
from energy_indexer.core.logger import log


def describe_event(event: DomainEvent) -> str:
    """
    One-line human readable summary of an event.

    Args:
        event: Decoded marketplace event

    Returns:
        Summary string, e.g. ``"ListingCreated #1 seller=0xa.. kWh=100"``
    """
    if isinstance(event, ListingCreatedEvent):
        detail = (
            f"#{event.listing_id} seller={event.seller} token={event.token_id} "
            f"kWh={event.kwh_amount} price={event.price_per_kwh}"
        )
    elif isinstance(event, ListingCancelledEvent):
        detail = f"#{event.listing_id}"
    elif isinstance(event, OrderCreatedEvent):
        detail = (
            f"#{event.order_id} listing={event.listing_id} buyer={event.buyer} "
            f"kWh={event.kwh_amount} total={event.total_price}"
        )
    elif isinstance(event, OrderCompletedEvent):
        detail = f"#{event.order_id}"
    else:
        detail = ""

    return f"{event.event_type} {detail} @ block {event.block_number}:{event.log_index}".strip()


def log_events(events: Iterable[DomainEvent]) -> None:
    """Log every event at DEBUG level."""
    for event in events:
        log.debug(describe_event(event))


def log_event_batch(from_block: int, to_block: int, result: BatchResult) -> None:
    """
    Log the summary line for one committed batch.

    Args:
        from_block: First block of the batch
        to_block: Last block of the batch
        result: Batch counters
    """
    if not result.by_type and not result.recovered:
        log.debug(f"Blocks {from_block}-{to_block}: no marketplace events")
        return

    counts = ", ".join(f"{name}={count}" for name, count in sorted(result.by_type.items()))
    log.info(
        f"Blocks {from_block}-{to_block}: applied {result.applied}, skipped {result.skipped}, "
        f"deferred {result.deferred}, recovered {result.recovered} ({counts})"
    )
