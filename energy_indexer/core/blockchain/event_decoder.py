"""
Marketplace event decoding.

Maps raw log topics/data into typed domain events. Unknown or malformed
logs raise DecodeError; ``decode_many`` logs and drops them, since new
unrelated event types may appear on the same contract over time.
"""

from typing import Callable, Dict, Iterable, List, Optional

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError

from energy_indexer.core.blockchain.log_reader import (
    LISTING_CANCELLED_SIGNATURE,
    LISTING_CREATED_SIGNATURE,
    ORDER_COMPLETED_SIGNATURE,
    ORDER_CREATED_SIGNATURE,
    event_topic,
)
from energy_indexer.core.events import (
    ListingCancelledEvent,
    ListingCreatedEvent,
    MarketplaceEvent,
    OrderCompletedEvent,
    OrderCreatedEvent,
    RawLog,
    sort_events,
)
from energy_indexer.core.exceptions import DecodeError
from energy_indexer.core.logger import log


def _topic_uint(topic: str) -> int:
    return int(topic, 16)


def _topic_address(topic: str) -> str:
    return "0x" + topic[-40:].lower()


def _data_bytes(data: str) -> bytes:
    return bytes.fromhex(data[2:] if data.startswith("0x") else data)


class EventDecoder:
    """Decode marketplace logs into domain events."""

    def __init__(self, contract_address: Optional[str] = None):
        """
        Args:
            contract_address: If set, logs emitted by any other address are rejected
        """
        self.contract_address = contract_address.lower() if contract_address else None
        self._handlers: Dict[str, Callable[[RawLog], MarketplaceEvent]] = {
            event_topic(LISTING_CREATED_SIGNATURE): self._decode_listing_created,
            event_topic(LISTING_CANCELLED_SIGNATURE): self._decode_listing_cancelled,
            event_topic(ORDER_CREATED_SIGNATURE): self._decode_order_created,
            event_topic(ORDER_COMPLETED_SIGNATURE): self._decode_order_completed,
        }

    def decode(self, raw_log: RawLog) -> MarketplaceEvent:
        """
        Decode a single log.

        Raises:
            DecodeError: Unknown event signature, foreign contract, or malformed payload
        """
        if not raw_log.topics:
            raise self._error(raw_log, "log has no topics")

        if self.contract_address and raw_log.address.lower() != self.contract_address:
            raise self._error(raw_log, f"log emitted by unexpected contract {raw_log.address}")

        handler = self._handlers.get(raw_log.topics[0].lower())
        if handler is None:
            raise self._error(raw_log, f"unknown event topic {raw_log.topics[0]}")

        try:
            return handler(raw_log)
        except (DecodingError, ValueError, IndexError) as e:
            raise self._error(raw_log, f"malformed payload: {e}") from e

    def decode_many(self, raw_logs: Iterable[RawLog]) -> List[MarketplaceEvent]:
        """Decode a batch, skipping undecodable logs, sorted by (block, log index)."""
        events = []
        for raw_log in raw_logs:
            try:
                events.append(self.decode(raw_log))
            except DecodeError as e:
                log.warning(f"Skipping undecodable log: {e}")
        return sort_events(events)

    @staticmethod
    def _error(raw_log: RawLog, reason: str) -> DecodeError:
        return DecodeError(
            f"block {raw_log.block_number} log {raw_log.log_index} "
            f"(tx {raw_log.transaction_hash}): {reason}",
            block_number=raw_log.block_number,
            log_index=raw_log.log_index,
        )

    @staticmethod
    def _expect_topics(raw_log: RawLog, count: int) -> None:
        if len(raw_log.topics) != count:
            raise ValueError(f"expected {count} topics, got {len(raw_log.topics)}")

    @staticmethod
    def _meta(raw_log: RawLog) -> dict:
        return {
            'block_number': raw_log.block_number,
            'log_index': raw_log.log_index,
            'tx_hash': raw_log.transaction_hash,
        }

    def _decode_listing_created(self, raw_log: RawLog) -> ListingCreatedEvent:
        # ListingCreated(uint256 indexed listingId, address indexed seller, uint256 tokenId, uint256 kWhAmount, uint256 pricePerKwh)
        self._expect_topics(raw_log, 3)
        token_id, kwh_amount, price_per_kwh = abi_decode(
            ['uint256', 'uint256', 'uint256'], _data_bytes(raw_log.data)
        )
        return ListingCreatedEvent(
            listing_id=_topic_uint(raw_log.topics[1]),
            seller=_topic_address(raw_log.topics[2]),
            token_id=token_id,
            kwh_amount=kwh_amount,
            price_per_kwh=price_per_kwh,
            **self._meta(raw_log),
        )

    def _decode_listing_cancelled(self, raw_log: RawLog) -> ListingCancelledEvent:
        # ListingCancelled(uint256 indexed listingId)
        self._expect_topics(raw_log, 2)
        return ListingCancelledEvent(
            listing_id=_topic_uint(raw_log.topics[1]),
            **self._meta(raw_log),
        )

    def _decode_order_created(self, raw_log: RawLog) -> OrderCreatedEvent:
        # OrderCreated(uint256 indexed orderId, uint256 indexed listingId, address buyer, uint256 kWhAmount, uint256 totalPrice)
        self._expect_topics(raw_log, 3)
        buyer, kwh_amount, total_price = abi_decode(
            ['address', 'uint256', 'uint256'], _data_bytes(raw_log.data)
        )
        return OrderCreatedEvent(
            order_id=_topic_uint(raw_log.topics[1]),
            listing_id=_topic_uint(raw_log.topics[2]),
            buyer=buyer.lower(),
            kwh_amount=kwh_amount,
            total_price=total_price,
            **self._meta(raw_log),
        )

    def _decode_order_completed(self, raw_log: RawLog) -> OrderCompletedEvent:
        # OrderCompleted(uint256 indexed orderId, address buyer, address seller, uint256 amount)
        self._expect_topics(raw_log, 2)
        buyer, seller, amount = abi_decode(
            ['address', 'address', 'uint256'], _data_bytes(raw_log.data)
        )
        return OrderCompletedEvent(
            order_id=_topic_uint(raw_log.topics[1]),
            buyer=buyer.lower(),
            seller=seller.lower(),
            amount=amount,
            **self._meta(raw_log),
        )
