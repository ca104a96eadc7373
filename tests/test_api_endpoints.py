"""Tests for the HTTP read API."""

import unittest

from marketplace_fakes import (
    BUYER,
    SELLER,
    DatabaseTestCase,
    FakeChainReader,
    listing_created,
    make_converter,
    order_created,
)

from fastapi.testclient import TestClient

from energy_indexer.api.dependencies import get_listing_service, get_sync_scheduler
from energy_indexer.api.main import app
from energy_indexer.core.reconciliation import ReconciliationEngine
from energy_indexer.services.listing_service import ListingQueryService


class ApiTestCase(DatabaseTestCase):
    def setUp(self):
        super().setUp()
        converter = make_converter()
        engine = ReconciliationEngine(FakeChainReader(default_zone=2), converter)
        engine.apply_batch([
            listing_created(listing_id=1, kwh=100, block=10),
            listing_created(listing_id=2, kwh=50, block=11),
            order_created(order_id=1, listing_id=1, kwh=40, block=12),
        ])

        service = ListingQueryService(converter, clock=lambda: engine._block_time(20))
        app.dependency_overrides[get_listing_service] = lambda: service
        app.dependency_overrides[get_sync_scheduler] = lambda: None

        # No context manager: startup would load config.yaml and start the indexer
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        super().tearDown()


class ListingEndpointTests(ApiTestCase):
    def test_root_and_health(self):
        self.assertEqual(self.client.get("/").json()["status"], "running")
        self.assertEqual(self.client.get("/health").json(), {"status": "healthy", "indexer": "disabled"})

    def test_list_listings(self):
        response = self.client.get("/listings", params={"page": 1, "limit": 1})

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["pagination"], {"page": 1, "limit": 1, "total": 2, "pages": 2})
        self.assertEqual(body["listings"][0]["listingId"], 2)
        self.assertEqual(body["listings"][0]["pricePerKwhDisplay"], "28.50")

    def test_zone_filter(self):
        self.assertEqual(self.client.get("/listings", params={"zone": 2}).json()["pagination"]["total"], 2)
        self.assertEqual(self.client.get("/listings", params={"zone": 7}).json()["listings"], [])

    def test_invalid_paging_is_rejected(self):
        self.assertEqual(self.client.get("/listings", params={"limit": 0}).status_code, 422)
        self.assertEqual(self.client.get("/listings", params={"limit": 101}).status_code, 422)
        self.assertEqual(self.client.get("/listings", params={"page": 0}).status_code, 422)

    def test_zone_map_is_not_shadowed_by_listing_id(self):
        response = self.client.get("/listings/map/zones")

        self.assertEqual(response.status_code, 200)
        zones = response.json()
        self.assertEqual(len(zones), 1)
        self.assertEqual(zones[0]["gridZone"], 2)
        self.assertEqual(zones[0]["listingCount"], 2)
        self.assertEqual(zones[0]["totalEnergy"], "150")

    def test_listing_detail(self):
        response = self.client.get("/listings/1")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["remainingAmount"], "60")
        self.assertEqual(body["seller"]["walletAddress"], SELLER)
        self.assertEqual(body["orders"][0]["buyerAddress"], BUYER)

    def test_listing_not_found(self):
        response = self.client.get("/listings/999")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["detail"], "Listing not found")

    def test_internal_errors_are_not_leaked(self):
        class BrokenService:
            def list_active_listings(self, **kwargs):
                raise RuntimeError("connection string with password")

        app.dependency_overrides[get_listing_service] = lambda: BrokenService()

        response = self.client.get("/listings")
        self.assertEqual(response.status_code, 500)
        self.assertNotIn("password", response.text)


class AccountAndSyncEndpointTests(ApiTestCase):
    def test_account(self):
        response = self.client.get(f"/accounts/{SELLER.upper().replace('0X', '0x')}")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["walletAddress"], SELLER)
        self.assertEqual(body["listingCount"], 2)
        self.assertEqual(body["totalEnergySold"], "40")

    def test_account_not_found(self):
        self.assertEqual(self.client.get("/accounts/0x" + "99" * 20).status_code, 404)

    def test_sync_status_when_disabled(self):
        body = self.client.get("/sync/status").json()
        self.assertFalse(body["enabled"])
        self.assertTrue(body["healthy"])


if __name__ == "__main__":
    unittest.main()
