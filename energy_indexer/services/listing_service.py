"""
Listing query service.

Read-only access to the reconciled marketplace state. Listing activity is
re-derived against the wall clock at query time: the stored ``is_active``
flag only reflects what the chain events said, while expiry is lazy.
Display-currency values are computed on every read and never stored.
"""

from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional
import logging

from energy_indexer.core.exceptions import AccountNotFoundError, ListingNotFoundError
from energy_indexer.core.models import Account, GridZone, Listing, Order
from energy_indexer.core.monetary import MonetaryConverter
from energy_indexer.core.utils.time_utils import to_iso, utc_now


logger = logging.getLogger(__name__)


class ListingQueryService:
    """Service for querying listings, orders, accounts and zone aggregates."""

    def __init__(
        self,
        converter: MonetaryConverter,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize listing query service.

        Args:
            converter: Monetary converter for display-currency fields
            clock: Wall-clock source used for lazy expiry
        """
        self.converter = converter
        self.clock = clock

    def _active_query(self, now: datetime, zone: Optional[int] = None):
        query = Listing.select().where(
            (Listing.is_active == True) & (Listing.expires_at > now)  # noqa: E712
        )
        if zone is not None:
            query = query.where(Listing.grid_zone == zone)
        return query

    def list_active_listings(
        self,
        zone: Optional[int] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Dict[str, Any]:
        """
        Get one page of currently active listings, newest first.

        Args:
            zone: Only listings in this grid zone
            page: 1-based page number
            page_size: Listings per page

        Returns:
            ``{"listings": [...], "pagination": {page, limit, total, pages}}``
        """
        if page < 1 or page_size < 1:
            raise ValueError("page and page_size must be positive")

        now = self.clock()
        query = self._active_query(now, zone)
        total = query.count()

        listings = list(
            query.order_by(Listing.created_at.desc(), Listing.listing_id.desc())
            .paginate(page, page_size)
        )
        sellers = self._accounts_by_address(listing.seller_id for listing in listings)

        return {
            "listings": [
                self.serialize_listing(listing, sellers.get(listing.seller_id), now)
                for listing in listings
            ],
            "pagination": {
                "page": page,
                "limit": page_size,
                "total": total,
                "pages": -(-total // page_size),
            },
        }

    def listing_by_id(self, listing_id: int) -> Dict[str, Any]:
        """
        Get a single listing with seller summary and its orders.

        Raises:
            ListingNotFoundError: If the listing was never indexed
        """
        listing = Listing.get_or_none(Listing.listing_id == listing_id)
        if listing is None:
            raise ListingNotFoundError(listing_id)

        now = self.clock()
        seller = Account.get_or_none(Account.address == listing.seller_id)
        result = self.serialize_listing(listing, seller, now, detailed_seller=True)
        result["orders"] = self.orders_for_listing(listing_id)
        return result

    def orders_for_listing(self, listing_id: int) -> List[Dict[str, Any]]:
        orders = (
            Order.select()
            .where(Order.listing == listing_id)
            .order_by(Order.block_number, Order.log_index)
        )
        return [self.serialize_order(order) for order in orders]

    def zone_aggregates(self) -> List[Dict[str, Any]]:
        """
        Aggregate currently active listings by grid zone.

        Returns:
            One entry per zone with at least one active listing:
            zone, listingCount, totalEnergy, avgPrice plus static zone details
        """
        now = self.clock()
        groups: Dict[int, Dict[str, int]] = {}

        for listing in self._active_query(now):
            group = groups.setdefault(listing.grid_zone, {"count": 0, "energy": 0, "price_sum": 0})
            group["count"] += 1
            group["energy"] += listing.kwh_amount
            group["price_sum"] += listing.price_per_kwh

        details = {
            zone.zone_id: zone
            for zone in GridZone.select().where(GridZone.zone_id.in_(list(groups)))
        } if groups else {}

        aggregates = []
        for zone_id in sorted(groups):
            group = groups[zone_id]
            avg_price = group["price_sum"] // group["count"]
            entry = {
                "gridZone": zone_id,
                "listingCount": group["count"],
                "totalEnergy": str(group["energy"]),
                "avgPrice": str(avg_price),
                "avgPriceNative": self.converter.native_display(avg_price),
                "avgPriceDisplay": self.converter.price_to_display(avg_price),
                "displayCurrency": self.converter.display_currency,
            }
            zone = details.get(zone_id)
            if zone is not None:
                entry.update({
                    "name": zone.name,
                    "city": zone.city,
                    "state": zone.state,
                    "centerLat": zone.center_lat,
                    "centerLng": zone.center_lng,
                    "basePriceDisplay": zone.base_price_display,
                    "demandMultiplier": zone.demand_multiplier,
                })
            else:
                logger.debug(f"Grid zone {zone_id} has no reference data")
            aggregates.append(entry)

        return aggregates

    def account_summary(self, address: str) -> Dict[str, Any]:
        """
        Get an account with its cumulative counters.

        Raises:
            AccountNotFoundError: If the address never appeared in an event
        """
        account = Account.get_or_none(Account.address == address.lower())
        if account is None:
            raise AccountNotFoundError(address)

        summary = self.serialize_account(account, detailed=True)
        summary["listingCount"] = Listing.select().where(Listing.seller == account.address).count()
        summary["purchaseCount"] = Order.select().where(Order.buyer == account.address).count()
        return summary

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def serialize_listing(
        self,
        listing: Listing,
        seller: Optional[Account],
        now: datetime,
        detailed_seller: bool = False
    ) -> Dict[str, Any]:
        converter = self.converter
        return {
            "listingId": listing.listing_id,
            "sellerAddress": listing.seller_id,
            "seller": self.serialize_account(seller, detailed=detailed_seller) if seller else None,
            "tokenId": str(listing.token_id),
            "kWhAmount": str(listing.kwh_amount),
            "remainingAmount": str(listing.remaining_amount),
            "pricePerKwh": str(listing.price_per_kwh),
            "pricePerKwhETH": str(listing.price_per_kwh),
            "pricePerKwhNative": converter.native_display(listing.price_per_kwh),
            "pricePerKwhDisplay": converter.price_to_display(listing.price_per_kwh),
            "totalPriceDisplay": converter.listing_value_display(listing.kwh_amount, listing.price_per_kwh),
            "displayCurrency": converter.display_currency,
            "gridZone": listing.grid_zone,
            "isActive": listing.is_live(now),
            "status": listing.state_at(now).value,
            "createdAt": to_iso(listing.created_at),
            "expiresAt": to_iso(listing.expires_at),
            "txHash": listing.tx_hash,
        }

    def serialize_order(self, order: Order) -> Dict[str, Any]:
        return {
            "orderId": order.order_id,
            "listingId": order.listing_id,
            "buyerAddress": order.buyer_id,
            "sellerAddress": order.seller_id,
            "kWhAmount": str(order.kwh_amount),
            "pricePerKwh": str(order.price_per_kwh),
            "totalPrice": str(order.total_price),
            "totalPriceDisplay": self.converter.price_to_display(order.total_price),
            "platformFee": str(order.platform_fee),
            "status": order.status,
            "createdAt": to_iso(order.created_at),
            "completedAt": to_iso(order.completed_at),
            "txHash": order.tx_hash,
        }

    @staticmethod
    def serialize_account(account: Account, detailed: bool = False) -> Dict[str, Any]:
        summary = {
            "walletAddress": account.address,
            "displayName": account.display_name,
            "reputationScore": account.reputation_score,
        }
        if detailed:
            summary.update({
                "role": account.role,
                "totalEnergyProduced": str(account.total_energy_produced),
                "totalEnergySold": str(account.total_energy_sold),
                "totalEnergyBought": str(account.total_energy_bought),
            })
        return summary

    @staticmethod
    def _accounts_by_address(addresses: Iterable[str]) -> Dict[str, Account]:
        addresses = list(set(addresses))
        if not addresses:
            return {}
        return {
            account.address: account
            for account in Account.select().where(Account.address.in_(addresses))
        }
