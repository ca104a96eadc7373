"""
Services layer for the energy marketplace indexer.

Read services shared by the HTTP API and operator scripts.
"""

from energy_indexer.services.listing_service import ListingQueryService

__all__ = [
    'ListingQueryService',
]
