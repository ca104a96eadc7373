"""
Account endpoints.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException

from energy_indexer.api.dependencies import get_listing_service
from energy_indexer.api.schemas import AccountResponse
from energy_indexer.core.exceptions import AccountNotFoundError
from energy_indexer.services.listing_service import ListingQueryService


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/accounts", tags=["accounts"])


@router.get("/{address}", response_model=AccountResponse)
async def get_account(
    address: str,
    listing_service: ListingQueryService = Depends(get_listing_service)
) -> AccountResponse:
    """
    Get an account's role, energy counters and activity counts.

    Args:
        address: Account address (case-insensitive)
    """
    try:
        return listing_service.account_summary(address)
    except AccountNotFoundError:
        raise HTTPException(status_code=404, detail="Account not found")
    except Exception as e:
        logger.error(f"Failed to fetch account {address}: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch account")
