"""Tests for the catch-up / tail-follow scheduler."""

import time
import unittest
from dataclasses import replace
from unittest.mock import patch

from marketplace_fakes import (
    MARKETPLACE,
    DatabaseTestCase,
    FakeChainReader,
    dump_state,
    listing_created,
    make_converter,
    marketplace_history,
    raw_listing_created,
    temporary_database,
)

from energy_indexer.core.blockchain.event_decoder import EventDecoder
from energy_indexer.core.database_handler import DatabaseHandler
from energy_indexer.core.exceptions import ChainUnavailableError, ReconciliationConflict
from energy_indexer.core.models import Listing, Order, OrderStatus, db
from energy_indexer.core.reconciliation import ReconciliationEngine
from energy_indexer.core.sync_scheduler import SyncPhase, SyncScheduler


def build_scheduler(reader, max_block_range=10, start_block=0, poll_interval=5.0, max_backoff=60.0):
    engine = ReconciliationEngine(reader, make_converter())
    return SyncScheduler(
        reader=reader,
        decoder=EventDecoder(contract_address=MARKETPLACE),
        engine=engine,
        start_block=start_block,
        poll_interval=poll_interval,
        max_block_range=max_block_range,
        max_backoff=max_backoff,
    )


class RunCycleTests(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        self.reader = FakeChainReader(marketplace_history(), head=40)
        self.scheduler = build_scheduler(self.reader)

    def test_first_cycle_starts_at_start_block(self):
        result = self.scheduler.run_cycle()

        self.assertEqual((result.from_block, result.to_block), (0, 9))
        self.assertFalse(result.caught_up)
        self.assertEqual(DatabaseHandler.get_checkpoint(), 9)
        self.assertEqual(Listing.select().count(), 2)

    def test_catch_up_reaches_head_in_bounded_ranges(self):
        cycles = self.scheduler.catch_up()

        self.assertEqual(cycles, 5)
        self.assertEqual(DatabaseHandler.get_checkpoint(), 40)
        self.assertEqual(
            self.reader.fetch_calls,
            [(0, 9), (10, 19), (20, 29), (30, 39), (40, 40)],
        )
        self.assertEqual(Listing.get(Listing.listing_id == 1).remaining_amount, 0)
        self.assertEqual(Order.get(Order.order_id == 1).status, OrderStatus.COMPLETED.value)

    def test_checkpoint_is_monotonic(self):
        seen = []
        for _ in range(8):
            self.scheduler.run_cycle()
            seen.append(DatabaseHandler.get_checkpoint())

        self.assertEqual(seen, sorted(seen))
        self.assertEqual(seen[-1], 40)

    def test_caught_up_cycle_is_empty(self):
        self.scheduler.catch_up()
        result = self.scheduler.run_cycle()

        self.assertTrue(result.empty)
        self.assertTrue(result.caught_up)
        self.assertEqual(DatabaseHandler.get_checkpoint(), 40)

    def test_new_blocks_are_picked_up(self):
        self.scheduler.catch_up()
        self.reader.logs.append(raw_listing_created(listing_id=4, block=45))
        self.reader.head = 46

        result = self.scheduler.run_cycle()

        self.assertEqual((result.from_block, result.to_block), (41, 46))
        self.assertTrue(Listing.select().where(Listing.listing_id == 4).exists())

    def test_unknown_cancellation_does_not_block_checkpoint(self):
        self.reader.head = 25
        self.scheduler.catch_up()

        self.assertEqual(DatabaseHandler.get_checkpoint(), 25)
        self.assertFalse(Listing.select().where(Listing.listing_id == 999).exists())

    def test_undecodable_logs_are_skipped(self):
        junk = replace(raw_listing_created(listing_id=9, block=3), data="0x00")
        self.reader.logs.append(junk)

        result = self.scheduler.run_cycle()

        self.assertEqual(result.undecodable, 1)
        self.assertEqual(DatabaseHandler.get_checkpoint(), 9)

    def test_failed_cycle_rolls_back_everything(self):
        self.scheduler.run_cycle()
        before = dump_state()
        real_apply_batch = self.scheduler.engine.apply_batch

        def apply_then_fail(events):
            real_apply_batch(events)
            raise ReconciliationConflict("write conflict")

        with patch.object(self.scheduler.engine, 'apply_batch', side_effect=apply_then_fail):
            with self.assertRaises(ReconciliationConflict):
                self.scheduler.run_cycle()

        self.assertEqual(DatabaseHandler.get_checkpoint(), 9)
        self.assertEqual(dump_state(), before)

    def test_chain_outage_leaves_checkpoint(self):
        self.scheduler.run_cycle()
        self.reader.go_down()

        with self.assertRaises(ChainUnavailableError):
            self.scheduler.run_cycle()

        self.assertEqual(DatabaseHandler.get_checkpoint(), 9)

    def test_busy_lock_skips_cycle(self):
        self.scheduler._cycle_lock.acquire()
        try:
            self.assertIsNone(self.scheduler.run_cycle())
        finally:
            self.scheduler._cycle_lock.release()

        self.assertIsNone(DatabaseHandler.get_checkpoint())
        self.assertEqual(self.reader.fetch_calls, [])

    def test_grid_zones_are_read_outside_the_write_transaction(self):
        self.reader.zones = {2: 4}
        in_transaction = []
        real_lookup = self.reader.listing_grid_zone

        def lookup(listing_id):
            in_transaction.append(db.in_transaction())
            return real_lookup(listing_id)

        self.reader.listing_grid_zone = lookup
        self.scheduler.run_cycle()

        self.assertEqual(self.reader.zone_calls, [1, 2])
        self.assertEqual(in_transaction, [False, False])
        self.assertEqual(Listing.get(Listing.listing_id == 2).grid_zone, 4)

    def test_stored_listings_are_not_looked_up_again(self):
        self.scheduler.run_cycle()
        replayed = [listing_created(listing_id=1, block=2)]

        self.assertEqual(self.scheduler._resolve_grid_zones(replayed), replayed)
        self.assertEqual(self.reader.zone_calls, [1, 2])

    def test_start_block_is_respected(self):
        scheduler = build_scheduler(self.reader, start_block=20)
        result = scheduler.run_cycle()
        self.assertEqual(result.from_block, 20)


class ReplayTests(unittest.TestCase):
    """A full replay must rebuild exactly what live-tailing produced."""

    def _run(self, drive):
        with temporary_database():
            drive()
            return dump_state()

    def test_replay_matches_live_tail(self):
        history = marketplace_history()

        def catch_up_once():
            reader = FakeChainReader(history, head=40)
            build_scheduler(reader, max_block_range=1000).catch_up()

        def tail_block_by_block():
            reader = FakeChainReader(history, head=0)
            scheduler = build_scheduler(reader, max_block_range=3)
            for head in range(0, 41):
                reader.head = head
                scheduler.run_cycle()

        replayed = self._run(catch_up_once)
        tailed = self._run(tail_block_by_block)

        self.assertEqual(replayed, tailed)
        self.assertEqual(len(replayed['listings']), 3)
        self.assertEqual(len(replayed['orders']), 3)


class BackgroundLoopTests(DatabaseTestCase):
    def test_backoff_is_exponential_and_capped(self):
        scheduler = build_scheduler(FakeChainReader(), poll_interval=5.0, max_backoff=60.0)

        self.assertEqual(scheduler.backoff_delay(0), 5.0)
        self.assertEqual(scheduler.backoff_delay(1), 10.0)
        self.assertEqual(scheduler.backoff_delay(2), 20.0)
        self.assertEqual(scheduler.backoff_delay(10), 60.0)

    def test_status_reports_chain_outage(self):
        reader = FakeChainReader(head=5)
        scheduler = build_scheduler(reader)

        self.assertTrue(scheduler.status().healthy)

        scheduler._record_failure(ChainUnavailableError("node unreachable"))
        status = scheduler.status()
        self.assertFalse(status.healthy)
        self.assertEqual(status.consecutive_failures, 1)
        self.assertIn("unreachable", status.last_error)

        scheduler.catch_up()
        status = scheduler.status()
        self.assertTrue(status.healthy)
        self.assertEqual(status.checkpoint, 5)
        self.assertEqual(status.head, 5)

    def test_background_thread_follows_and_stops(self):
        reader = FakeChainReader(marketplace_history(), head=40)
        scheduler = build_scheduler(reader, poll_interval=0.05, max_backoff=0.2)

        scheduler.start()
        try:
            deadline = time.monotonic() + 10
            while DatabaseHandler.get_checkpoint() != 40 and time.monotonic() < deadline:
                time.sleep(0.05)
            self.assertEqual(DatabaseHandler.get_checkpoint(), 40)
        finally:
            scheduler.stop(timeout=5)

        self.assertFalse(scheduler.is_running)
        self.assertEqual(scheduler.status().phase, SyncPhase.STOPPED.value)

    def test_background_thread_survives_outage(self):
        reader = FakeChainReader(marketplace_history(), head=40)
        reader.go_down()
        scheduler = build_scheduler(reader, poll_interval=0.05, max_backoff=0.1)

        scheduler.start()
        try:
            deadline = time.monotonic() + 10
            while scheduler.status().consecutive_failures < 2 and time.monotonic() < deadline:
                time.sleep(0.05)
            self.assertTrue(scheduler.is_running)
            self.assertIsNone(DatabaseHandler.get_checkpoint())

            reader.come_back()
            while DatabaseHandler.get_checkpoint() != 40 and time.monotonic() < deadline:
                time.sleep(0.05)
            self.assertEqual(DatabaseHandler.get_checkpoint(), 40)
        finally:
            scheduler.stop(timeout=5)


if __name__ == "__main__":
    unittest.main()
