"""
Reconciliation engine.

Applies decoded marketplace events to the mirror store. Every rule is
idempotent: applying an event a second time leaves the store unchanged,
which is what makes at-least-once replay from the checkpoint safe.

The engine never opens the outer transaction itself; the scheduler wraps a
whole batch plus the checkpoint update in one ``db.atomic()`` block. Each
event attempt runs in its own savepoint so a failed attempt can be retried
without discarding the rest of the batch.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Iterable, Optional, Protocol

from peewee import DatabaseError

from energy_indexer.core.database_handler import DatabaseHandler
from energy_indexer.core.events import (
    BatchResult,
    DomainEvent,
    ListingCancelledEvent,
    ListingCreatedEvent,
    OrderCompletedEvent,
    OrderCreatedEvent,
    sort_events,
)
from energy_indexer.core.exceptions import ReconciliationConflict
from energy_indexer.core.logger import log
from energy_indexer.core.models import (
    Account,
    AccountRole,
    Listing,
    ListingStatus,
    Order,
    OrderStatus,
    db,
)
from energy_indexer.core.monetary import MonetaryConverter
from energy_indexer.core.utils.event_logger import describe_event
from energy_indexer.core.utils.time_utils import from_unix


class ChainStateReader(Protocol):
    def block_timestamp(self, block_number: int) -> int:
        ...

    def listing_grid_zone(self, listing_id: int) -> int:
        ...


class ApplyOutcome(str, Enum):
    APPLIED = 'APPLIED'
    NOOP = 'NOOP'
    SKIPPED = 'SKIPPED'
    DEFERRED = 'DEFERRED'


class ReconciliationEngine:
    """
    Applies marketplace events to Account, Listing and Order rows.

    Listing lifecycle: absent -> ACTIVE -> CANCELLED | DEPLETED (EXPIRED is
    derived at read time). Order lifecycle: PENDING -> DELIVERED -> COMPLETED,
    with PENDING|DELIVERED -> DISPUTED -> REFUNDED as the alternate branch.
    """

    def __init__(
        self,
        reader: ChainStateReader,
        converter: MonetaryConverter,
        listing_ttl_seconds: int = 24 * 60 * 60,
        retry_limit: int = 3,
        deferred_attempt_limit: int = 100,
        database_handler=DatabaseHandler,
    ):
        """
        Initialize engine.

        Args:
            reader: Source of block timestamps and listing grid zones
            converter: Monetary converter for derived amounts
            listing_ttl_seconds: Listing lifetime counted from its creation block
            retry_limit: Attempts per event before raising ReconciliationConflict
            deferred_attempt_limit: Batches a deferred event is retried in before it is parked
            database_handler: Persistence helper for deferred events
        """
        self.reader = reader
        self.converter = converter
        self.listing_ttl = timedelta(seconds=listing_ttl_seconds)
        self.retry_limit = max(int(retry_limit), 1)
        self.deferred_attempt_limit = max(int(deferred_attempt_limit), 1)
        self.database_handler = database_handler

        self._handlers = {
            ListingCreatedEvent: self._apply_listing_created,
            ListingCancelledEvent: self._apply_listing_cancelled,
            OrderCreatedEvent: self._apply_order_created,
            OrderCompletedEvent: self._apply_order_completed,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def apply(self, event: DomainEvent) -> ApplyOutcome:
        """
        Apply one event, retrying storage errors up to ``retry_limit`` times.

        Raises:
            ReconciliationConflict: The event still failed after every attempt
            IndexerError: Chain lookups failed (not retried here)
        """
        handler = self._handlers.get(type(event))
        if handler is None:
            log.warning(f"No reconciliation rule for {type(event).__name__}; skipping")
            return ApplyOutcome.SKIPPED

        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry_limit + 1):
            try:
                with db.atomic():
                    return handler(event)
            except DatabaseError as e:
                last_error = e
                log.warning(
                    f"Applying {describe_event(event)} failed "
                    f"(attempt {attempt}/{self.retry_limit}): {e}"
                )

        raise ReconciliationConflict(
            f"Could not apply {describe_event(event)} after {self.retry_limit} attempt(s): {last_error}",
            event=event,
        )

    def apply_batch(self, events: Iterable[DomainEvent]) -> BatchResult:
        """
        Apply events in (block_number, log_index) order, then retry deferred ones.

        Must be called inside a transaction owned by the caller.
        """
        result = BatchResult()
        deferred_now = set()

        for event in sort_events(events):
            outcome = self.apply(event)
            if outcome == ApplyOutcome.DEFERRED:
                self._defer(event)
                deferred_now.add(event.event_key)
                result.deferred += 1
            elif outcome == ApplyOutcome.SKIPPED:
                result.skipped += 1
            else:
                result.applied += 1
            result.count(event)

        self._retry_deferred(result, deferred_now)
        return result

    def transition_order(self, order_id: int, target: OrderStatus, at: datetime) -> bool:
        """
        Move an order to ``target`` if the status machine allows it.

        Returns:
            True if the order changed, False for a refused or no-op transition
        """
        order = Order.get_or_none(Order.order_id == order_id)
        if order is None:
            log.warning(f"Order {order_id} not found; cannot move to {target.value}")
            return False
        return self._transition(order, target, at)

    # ------------------------------------------------------------------
    # Event rules
    # ------------------------------------------------------------------

    def _apply_listing_created(self, event: ListingCreatedEvent) -> ApplyOutcome:
        existing = Listing.get_or_none(Listing.listing_id == event.listing_id)
        if existing is not None:
            if not self._same_listing(existing, event):
                log.warning(
                    f"Listing {event.listing_id} already stored with different core fields "
                    f"(stored tx {existing.tx_hash}, event tx {event.tx_hash}); keeping stored row"
                )
            return ApplyOutcome.NOOP

        created_at = self._block_time(event.block_number)
        grid_zone = event.grid_zone
        if grid_zone is None:
            grid_zone = self.reader.listing_grid_zone(event.listing_id)

        seller = self._touch_account(event.seller, AccountRole.PRODUCER, event.block_number, created_at)
        seller.total_energy_produced = seller.total_energy_produced + event.kwh_amount
        seller.save()

        depleted = event.kwh_amount == 0
        Listing.create(
            listing_id=event.listing_id,
            seller=seller.address,
            token_id=event.token_id,
            kwh_amount=event.kwh_amount,
            remaining_amount=event.kwh_amount,
            price_per_kwh=event.price_per_kwh,
            grid_zone=int(grid_zone),
            is_active=not depleted,
            status=(ListingStatus.DEPLETED if depleted else ListingStatus.ACTIVE).value,
            created_at=created_at,
            expires_at=created_at + self.listing_ttl,
            block_number=event.block_number,
            log_index=event.log_index,
            tx_hash=event.tx_hash,
        )
        return ApplyOutcome.APPLIED

    def _apply_listing_cancelled(self, event: ListingCancelledEvent) -> ApplyOutcome:
        listing = Listing.get_or_none(Listing.listing_id == event.listing_id)
        if listing is None:
            log.warning(
                f"ListingCancelled for unknown listing {event.listing_id} "
                f"(block {event.block_number}); skipping"
            )
            return ApplyOutcome.SKIPPED

        if listing.status == ListingStatus.CANCELLED.value and not listing.is_active:
            return ApplyOutcome.NOOP

        listing.is_active = False
        listing.status = ListingStatus.CANCELLED.value
        listing.save()
        return ApplyOutcome.APPLIED

    def _apply_order_created(self, event: OrderCreatedEvent) -> ApplyOutcome:
        if Order.get_or_none(Order.order_id == event.order_id) is not None:
            return ApplyOutcome.NOOP

        created_at = self._block_time(event.block_number)
        buyer = self._touch_account(event.buyer, AccountRole.CONSUMER, event.block_number, created_at)

        listing = Listing.get_or_none(Listing.listing_id == event.listing_id)
        if listing is None:
            log.warning(
                f"OrderCreated #{event.order_id} references unknown listing {event.listing_id}; "
                f"deferring until the listing is indexed"
            )
            return ApplyOutcome.DEFERRED

        expected_total = self.converter.order_total(event.kwh_amount, listing.price_per_kwh)
        if expected_total != event.total_price:
            log.warning(
                f"Order {event.order_id}: chain total {event.total_price} differs from "
                f"computed {expected_total}; storing chain value"
            )

        Order.create(
            order_id=event.order_id,
            listing=listing.listing_id,
            buyer=buyer.address,
            seller=listing.seller_id,
            kwh_amount=event.kwh_amount,
            price_per_kwh=listing.price_per_kwh,
            total_price=event.total_price,
            platform_fee=self.converter.platform_fee(event.total_price),
            status=OrderStatus.PENDING.value,
            created_at=created_at,
            block_number=event.block_number,
            log_index=event.log_index,
            tx_hash=event.tx_hash,
        )

        remaining = listing.remaining_amount
        if event.kwh_amount > remaining:
            log.warning(
                f"Order {event.order_id} requests {event.kwh_amount} kWh but listing "
                f"{listing.listing_id} has {remaining} remaining; clamping at zero"
            )
        listing.remaining_amount = remaining - min(event.kwh_amount, remaining)
        if listing.remaining_amount == 0:
            listing.is_active = False
            if listing.status == ListingStatus.ACTIVE.value:
                listing.status = ListingStatus.DEPLETED.value
        listing.save()

        buyer.total_energy_bought = buyer.total_energy_bought + event.kwh_amount
        buyer.save()

        seller = Account.get(Account.address == listing.seller_id)
        seller.total_energy_sold = seller.total_energy_sold + event.kwh_amount
        seller.save()

        return ApplyOutcome.APPLIED

    def _apply_order_completed(self, event: OrderCompletedEvent) -> ApplyOutcome:
        order = Order.get_or_none(Order.order_id == event.order_id)
        if order is None:
            log.warning(
                f"OrderCompleted for unknown order {event.order_id}; deferring until the order is indexed"
            )
            return ApplyOutcome.DEFERRED

        completed_at = self._block_time(event.block_number)
        if self._transition(order, OrderStatus.COMPLETED, completed_at):
            return ApplyOutcome.APPLIED
        return ApplyOutcome.NOOP

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _defer(self, event: DomainEvent) -> None:
        attempts = self.database_handler.save_deferred_event(event, self._defer_reason(event))
        if attempts >= self.deferred_attempt_limit:
            log.warning(
                f"Giving up on deferred {describe_event(event)} after {attempts} attempt(s) "
                f"({self._defer_reason(event)}); it stays in deferred_events but is no longer retried"
            )

    def _retry_deferred(self, result: BatchResult, deferred_now: set) -> None:
        pending = self.database_handler.load_deferred_events(max_attempts=self.deferred_attempt_limit)
        for event in pending:
            outcome = self.apply(event)
            if outcome == ApplyOutcome.DEFERRED:
                if event.event_key not in deferred_now:
                    self._defer(event)
                continue

            self.database_handler.clear_deferred_event(event)
            if event.event_key in deferred_now:
                result.deferred -= 1
            if outcome == ApplyOutcome.APPLIED:
                result.recovered += 1
                log.info(f"Applied deferred event {describe_event(event)}")

    def _transition(self, order: Order, target: OrderStatus, at: datetime) -> bool:
        current = OrderStatus(order.status)
        if current == target:
            return False
        if not current.can_transition_to(target):
            log.debug(f"Order {order.order_id}: refusing transition {current.value} -> {target.value}")
            return False

        order.status = target.value
        if target == OrderStatus.COMPLETED:
            order.completed_at = at
        order.save()
        return True

    def _touch_account(self, address: str, role: AccountRole, block_number: int, seen_at: datetime) -> Account:
        """Create the account on first sight, or widen its role."""
        address = address.lower()
        account = Account.get_or_none(Account.address == address)
        if account is None:
            return Account.create(
                address=address,
                role=role.value,
                first_seen_block=block_number,
                created_at=seen_at,
            )

        merged = AccountRole(account.role).merge(role)
        if merged.value != account.role:
            account.role = merged.value
            account.save()
        return account

    def _block_time(self, block_number: int) -> datetime:
        return from_unix(self.reader.block_timestamp(block_number))

    @staticmethod
    def _same_listing(listing: Listing, event: ListingCreatedEvent) -> bool:
        return (
            listing.seller_id == event.seller.lower()
            and listing.token_id == event.token_id
            and listing.kwh_amount == event.kwh_amount
            and listing.price_per_kwh == event.price_per_kwh
        )

    @staticmethod
    def _defer_reason(event: DomainEvent) -> str:
        if isinstance(event, OrderCreatedEvent):
            return f"listing {event.listing_id} not indexed"
        if isinstance(event, OrderCompletedEvent):
            return f"order {event.order_id} not indexed"
        return "dependency not indexed"
