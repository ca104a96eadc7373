"""Pydantic schemas for API responses."""

from energy_indexer.api.schemas.listing_schemas import (
    SellerSummary,
    OrderSummary,
    ListingResponse,
    ListingDetailResponse,
    Pagination,
    ListingPageResponse,
    ZoneAggregateResponse,
    AccountResponse,
    SyncStatusResponse,
)

__all__ = [
    'SellerSummary',
    'OrderSummary',
    'ListingResponse',
    'ListingDetailResponse',
    'Pagination',
    'ListingPageResponse',
    'ZoneAggregateResponse',
    'AccountResponse',
    'SyncStatusResponse',
]
