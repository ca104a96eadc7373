"""
Listing endpoints.
"""

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query

from energy_indexer.api.dependencies import get_listing_service
from energy_indexer.api.schemas import (
    ListingDetailResponse,
    ListingPageResponse,
    ZoneAggregateResponse,
)
from energy_indexer.core.exceptions import ListingNotFoundError
from energy_indexer.services.listing_service import ListingQueryService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/listings", tags=["listings"])


@router.get("", response_model=ListingPageResponse)
async def get_active_listings(
    zone: Optional[int] = Query(None, ge=1, description="Only listings in this grid zone"),
    page: int = Query(1, ge=1, description="1-based page number"),
    limit: int = Query(20, ge=1, le=100, description="Listings per page (1-100)"),
    listing_service: ListingQueryService = Depends(get_listing_service)
) -> ListingPageResponse:
    """
    Get currently active listings, newest first.

    A listing is active while it is neither cancelled nor depleted and its
    expiry lies in the future; expiry is evaluated at request time.

    Args:
        zone: Grid zone filter
        page: Page number (default 1)
        limit: Page size (default 20, max 100)

    Returns:
        Listings page with pagination metadata
    """
    try:
        return listing_service.list_active_listings(zone=zone, page=page, page_size=limit)
    except Exception as e:
        logger.error(f"Failed to list active listings: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch listings")


@router.get("/map/zones", response_model=List[ZoneAggregateResponse])
async def get_zone_aggregates(
    listing_service: ListingQueryService = Depends(get_listing_service)
) -> List[ZoneAggregateResponse]:
    """
    Get active-listing counts, total energy and average price per grid zone.
    """
    try:
        return listing_service.zone_aggregates()
    except Exception as e:
        logger.error(f"Failed to aggregate zones: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch zone data")


@router.get("/{listing_id}", response_model=ListingDetailResponse)
async def get_listing(
    listing_id: int,
    listing_service: ListingQueryService = Depends(get_listing_service)
) -> ListingDetailResponse:
    """
    Get a single listing with its seller and order history.

    Historical listings are returned too; ``isActive`` and ``status``
    reflect their state at request time.
    """
    try:
        return listing_service.listing_by_id(listing_id)
    except ListingNotFoundError:
        raise HTTPException(status_code=404, detail="Listing not found")
    except Exception as e:
        logger.error(f"Failed to fetch listing {listing_id}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch listing")
