"""
Pydantic schemas for listing, order, account and zone responses.

On-chain amounts are serialized as decimal strings so 256-bit values
survive JSON clients that parse numbers as doubles.
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class SellerSummary(BaseModel):
    """Account summary embedded in listing responses."""

    walletAddress: str = Field(..., description="Lowercase account address")
    displayName: Optional[str] = None
    reputationScore: int = 0
    role: Optional[str] = None
    totalEnergyProduced: Optional[str] = None
    totalEnergySold: Optional[str] = None
    totalEnergyBought: Optional[str] = None


class OrderSummary(BaseModel):
    """Order as mirrored from chain events."""

    orderId: int
    listingId: int
    buyerAddress: str
    sellerAddress: str
    kWhAmount: str
    pricePerKwh: str = Field(..., description="Price frozen at purchase time, wei")
    totalPrice: str
    totalPriceDisplay: str
    platformFee: str
    status: str
    createdAt: Optional[str] = None
    completedAt: Optional[str] = None
    txHash: str


class ListingResponse(BaseModel):
    """Listing with derived display-currency fields."""

    listingId: int
    sellerAddress: str
    seller: Optional[SellerSummary] = None
    tokenId: str
    kWhAmount: str
    remainingAmount: str
    pricePerKwh: str
    pricePerKwhETH: str = Field(..., description="Raw on-chain price per kWh, wei")
    pricePerKwhNative: str = Field(..., description="Price per kWh in native coin units")
    pricePerKwhDisplay: str = Field(..., description="Price per kWh in the display currency")
    totalPriceDisplay: str = Field(..., description="kWhAmount x price in the display currency")
    displayCurrency: str
    gridZone: int
    isActive: bool
    status: str
    createdAt: Optional[str] = None
    expiresAt: Optional[str] = None
    txHash: str


class ListingDetailResponse(ListingResponse):
    orders: List[OrderSummary] = []


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ListingPageResponse(BaseModel):
    listings: List[ListingResponse]
    pagination: Pagination


class ZoneAggregateResponse(BaseModel):
    """Active-listing aggregate for one grid zone."""

    gridZone: int
    listingCount: int
    totalEnergy: str
    avgPrice: str = Field(..., description="Truncated mean price per kWh, wei")
    avgPriceNative: str
    avgPriceDisplay: str
    displayCurrency: str
    name: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    centerLat: Optional[float] = None
    centerLng: Optional[float] = None
    basePriceDisplay: Optional[str] = None
    demandMultiplier: Optional[str] = None


class AccountResponse(SellerSummary):
    listingCount: int = 0
    purchaseCount: int = 0


class SyncStatusResponse(BaseModel):
    """Background indexer state for operators."""

    enabled: bool
    phase: Optional[str] = None
    running: bool = False
    checkpoint: Optional[int] = None
    head: Optional[int] = None
    lag: Optional[int] = None
    consecutiveFailures: int = 0
    lastError: Optional[str] = None
    lastSuccessAt: Optional[datetime] = None
    deferredEvents: int = 0
    healthy: bool = True
