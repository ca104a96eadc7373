"""Error taxonomy shared by the indexer components."""

from typing import Optional


class IndexerError(Exception):
    """Base class for errors raised while syncing chain state."""


class TransientNetworkError(IndexerError):
    """RPC timeout or dropped connection; safe to retry."""


class ChainUnavailableError(IndexerError):
    """The chain endpoint stayed unreachable after all retries."""


class DecodeError(IndexerError):
    """A raw log could not be mapped to a known domain event."""

    def __init__(self, message: str, block_number: Optional[int] = None, log_index: Optional[int] = None):
        super().__init__(message)
        self.block_number = block_number
        self.log_index = log_index


class ReconciliationConflict(IndexerError):
    """An event kept failing to apply after the bounded retries."""

    def __init__(self, message: str, event=None):
        super().__init__(message)
        self.event = event


class ListingNotFoundError(LookupError):
    """Requested listing does not exist in the mirror store."""

    def __init__(self, listing_id: int):
        super().__init__(f"Listing {listing_id} not found")
        self.listing_id = listing_id


class AccountNotFoundError(LookupError):
    """Requested account has never appeared in a marketplace event."""

    def __init__(self, address: str):
        super().__init__(f"Account {address} not found")
        self.address = address
