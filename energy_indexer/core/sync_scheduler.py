"""
Sync scheduler.

Drives the catch-up-then-poll loop. Both phases run the same cycle:
read the head, take at most ``max_block_range`` blocks after the
checkpoint, decode and reconcile their events, and advance the checkpoint,
all inside one transaction. A failed cycle rolls back completely, so the
checkpoint is always a safe replay point.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import List, Optional

from energy_indexer.core.blockchain.event_decoder import EventDecoder
from energy_indexer.core.database_handler import DatabaseHandler
from energy_indexer.core.events import BatchResult, DomainEvent, ListingCreatedEvent
from energy_indexer.core.exceptions import ChainUnavailableError, IndexerError
from energy_indexer.core.logger import log
from energy_indexer.core.models import Listing, db
from energy_indexer.core.reconciliation import ReconciliationEngine
from energy_indexer.core.utils.event_logger import log_event_batch, log_events
from energy_indexer.core.utils.time_utils import utc_now


class SyncPhase(str, Enum):
    IDLE = 'IDLE'
    CATCHING_UP = 'CATCHING_UP'
    FOLLOWING = 'FOLLOWING'
    STOPPED = 'STOPPED'


@dataclass
class CycleResult:
    """Outcome of one committed cycle."""

    from_block: int
    to_block: int
    head: int
    batch: BatchResult = field(default_factory=BatchResult)
    undecodable: int = 0

    @property
    def caught_up(self) -> bool:
        return self.to_block >= self.head

    @property
    def empty(self) -> bool:
        return self.to_block < self.from_block


@dataclass
class SyncStatus:
    phase: str
    running: bool
    checkpoint: Optional[int]
    head: Optional[int]
    consecutive_failures: int
    last_error: Optional[str]
    last_success_at: Optional[datetime]
    deferred_events: int
    healthy: bool


class SyncScheduler:
    """
    Single-writer background loop that keeps the mirror store in sync.

    Only one cycle can be in flight: ``run_cycle`` takes a non-blocking lock
    and returns None if another cycle holds it.
    """

    def __init__(
        self,
        reader,
        decoder: EventDecoder,
        engine: ReconciliationEngine,
        database_handler=DatabaseHandler,
        start_block: int = 0,
        poll_interval: float = 5.0,
        max_block_range: int = 2000,
        max_backoff: float = 60.0,
        unhealthy_after_failures: int = 3,
    ):
        """
        Initialize scheduler.

        Args:
            reader: ChainLogReader (or a fake with the same methods)
            decoder: Event decoder
            engine: Reconciliation engine
            database_handler: Checkpoint persistence
            start_block: First block to index when no checkpoint exists
            poll_interval: Seconds between tail-follow cycles
            max_block_range: Maximum blocks per cycle
            max_backoff: Upper bound for the failure backoff in seconds
            unhealthy_after_failures: Consecutive failures before reporting unhealthy
        """
        self.reader = reader
        self.decoder = decoder
        self.engine = engine
        self.database_handler = database_handler
        self.start_block = int(start_block)
        self.poll_interval = float(poll_interval)
        self.max_block_range = max(int(max_block_range), 1)
        self.max_backoff = max(float(max_backoff), self.poll_interval)
        self.unhealthy_after_failures = unhealthy_after_failures

        self._cycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

        self._phase = SyncPhase.IDLE
        self._head: Optional[int] = None
        self._consecutive_failures = 0
        self._last_error: Optional[BaseException] = None
        self._last_success_at: Optional[datetime] = None

    @classmethod
    def from_config(cls, config: dict, reader, decoder: EventDecoder, engine: ReconciliationEngine) -> "SyncScheduler":
        indexer_config = config['indexer']
        return cls(
            reader=reader,
            decoder=decoder,
            engine=engine,
            start_block=int(indexer_config['start_block']),
            poll_interval=float(indexer_config['poll_interval_seconds']),
            max_block_range=int(indexer_config['max_block_range']),
            max_backoff=float(indexer_config['max_backoff_seconds']),
        )

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    def run_cycle(self) -> Optional[CycleResult]:
        """
        Process the next block range and commit it with the checkpoint.

        Returns:
            CycleResult, or None if another cycle is still in flight

        Raises:
            IndexerError: Chain access or reconciliation failed; nothing was committed
        """
        if not self._cycle_lock.acquire(blocking=False):
            log.debug("Previous sync cycle still running; skipping tick")
            return None

        try:
            return self._run_cycle_locked()
        finally:
            self._cycle_lock.release()

    def _run_cycle_locked(self) -> CycleResult:
        head = self.reader.current_block_height()
        self._head = head

        checkpoint = self.database_handler.get_checkpoint()
        from_block = self.start_block if checkpoint is None else max(checkpoint + 1, self.start_block)

        if from_block > head:
            return CycleResult(from_block=from_block, to_block=from_block - 1, head=head)

        to_block = min(head, from_block + self.max_block_range - 1)

        raw_logs = self.reader.fetch_marketplace_logs(from_block, to_block)
        events = self.decoder.decode_many(raw_logs)
        log_events(events)

        # Warm the timestamp cache and resolve grid zones before taking the write transaction
        for block_number in sorted({event.block_number for event in events}):
            self.reader.block_timestamp(block_number)
        events = self._resolve_grid_zones(events)

        with db.atomic():
            batch = self.engine.apply_batch(events)
            self.database_handler.update_checkpoint(to_block)

        log_event_batch(from_block, to_block, batch)

        return CycleResult(
            from_block=from_block,
            to_block=to_block,
            head=head,
            batch=batch,
            undecodable=len(raw_logs) - len(events),
        )

    def _resolve_grid_zones(self, events: List[DomainEvent]) -> List[DomainEvent]:
        """Attach the on-chain grid zone to listings that are not stored yet."""
        wanted = {
            event.listing_id for event in events
            if isinstance(event, ListingCreatedEvent) and event.grid_zone is None
        }
        if not wanted:
            return events

        stored = {
            row.listing_id
            for row in Listing.select(Listing.listing_id).where(Listing.listing_id.in_(list(wanted)))
        }
        zones = {
            listing_id: self.reader.listing_grid_zone(listing_id)
            for listing_id in sorted(wanted - stored)
        }

        return [
            replace(event, grid_zone=zones[event.listing_id])
            if isinstance(event, ListingCreatedEvent) and event.listing_id in zones and event.grid_zone is None
            else event
            for event in events
        ]

    def catch_up(self, max_cycles: Optional[int] = None) -> int:
        """
        Run cycles until the checkpoint reaches the current head.

        Args:
            max_cycles: Optional safety limit on the number of cycles

        Returns:
            Number of cycles that committed a non-empty range

        Raises:
            IndexerError: A cycle failed
        """
        self._phase = SyncPhase.CATCHING_UP
        committed = 0
        cycles = 0

        while not self._stop_event.is_set():
            if max_cycles is not None and cycles >= max_cycles:
                break
            cycles += 1

            result = self.run_cycle()
            if result is None:
                # Another caller holds the cycle lock; wait for it instead of spinning
                self._stop_event.wait(min(self.poll_interval, 1.0))
                continue

            self._record_success()
            if not result.empty:
                committed += 1
            if result.caught_up:
                break

        return committed

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background loop thread."""
        if self._thread and self._thread.is_alive():
            log.warning("SyncScheduler already running; start() ignored")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="sync-scheduler", daemon=True)
        self._thread.start()
        log.info(
            f"SyncScheduler started (start_block={self.start_block}, "
            f"interval={self.poll_interval}s, max_range={self.max_block_range})"
        )

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to stop after the current cycle and wait for it."""
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None
        self._phase = SyncPhase.STOPPED
        log.info("SyncScheduler stopped")

    def _run(self) -> None:
        self._phase = SyncPhase.CATCHING_UP

        while not self._stop_event.is_set():
            delay = self.poll_interval
            try:
                result = self.run_cycle()
                if result is not None:
                    self._record_success()
                    if not result.caught_up:
                        # More history behind the head; continue without waiting
                        continue
                    if self._phase == SyncPhase.CATCHING_UP:
                        self._phase = SyncPhase.FOLLOWING
                        log.info(f"Caught up to block {result.head}; following new blocks")
            except IndexerError as e:
                delay = self._record_failure(e)
                log.error(f"Sync cycle failed: {e}; retrying in {delay:.1f}s")
            except Exception as e:
                delay = self._record_failure(e)
                log.error(f"Unexpected error in sync cycle: {e}; retrying in {delay:.1f}s", exc_info=True)

            self._stop_event.wait(delay)

        self._phase = SyncPhase.STOPPED

    def _record_success(self) -> None:
        self._consecutive_failures = 0
        self._last_error = None
        self._last_success_at = utc_now()

    def _record_failure(self, error: BaseException) -> float:
        self._consecutive_failures += 1
        self._last_error = error
        return self.backoff_delay(self._consecutive_failures)

    def backoff_delay(self, failures: int) -> float:
        """Exponential backoff capped at ``max_backoff``."""
        if failures <= 0:
            return self.poll_interval
        return min(self.poll_interval * (2 ** failures), self.max_backoff)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until stop() is called or the timeout passes."""
        return self._stop_event.wait(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> SyncStatus:
        unavailable = isinstance(self._last_error, ChainUnavailableError)
        return SyncStatus(
            phase=self._phase.value,
            running=self.is_running,
            checkpoint=self.database_handler.get_checkpoint(),
            head=self._head,
            consecutive_failures=self._consecutive_failures,
            last_error=str(self._last_error) if self._last_error else None,
            last_success_at=self._last_success_at,
            deferred_events=self.database_handler.count_deferred_events(),
            healthy=not unavailable and self._consecutive_failures < self.unhealthy_after_failures,
        )

