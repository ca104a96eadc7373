"""
Chain log reader for the energy marketplace contract.

Thin wrapper over a web3 HTTP provider: block height, historical logs for
the marketplace events, block timestamps and the per-listing grid zone.
Network failures are retried with exponential backoff before surfacing as
ChainUnavailableError.
"""

import os
import time
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Sequence, Union

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from energy_indexer.core.events import RawLog
from energy_indexer.core.exceptions import ChainUnavailableError, TransientNetworkError
from energy_indexer.core.logger import log

# Canonical event signatures emitted by the marketplace contract
LISTING_CREATED_SIGNATURE = "ListingCreated(uint256,address,uint256,uint256,uint256)"
LISTING_CANCELLED_SIGNATURE = "ListingCancelled(uint256)"
ORDER_CREATED_SIGNATURE = "OrderCreated(uint256,uint256,address,uint256,uint256)"
ORDER_COMPLETED_SIGNATURE = "OrderCompleted(uint256,address,address,uint256)"

MARKETPLACE_EVENT_SIGNATURES = [
    LISTING_CREATED_SIGNATURE,
    LISTING_CANCELLED_SIGNATURE,
    ORDER_CREATED_SIGNATURE,
    ORDER_COMPLETED_SIGNATURE,
]

# listings(uint256) view: the sixth output is the grid zone
MARKETPLACE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "listingId", "type": "uint256"}],
        "name": "listings",
        "outputs": [
            {"name": "listingId", "type": "uint256"},
            {"name": "seller", "type": "address"},
            {"name": "tokenId", "type": "uint256"},
            {"name": "kWhAmount", "type": "uint256"},
            {"name": "pricePerKwh", "type": "uint256"},
            {"name": "gridZone", "type": "uint256"},
            {"name": "createdAt", "type": "uint256"},
            {"name": "expiresAt", "type": "uint256"},
            {"name": "isActive", "type": "bool"},
        ],
        "stateMutability": "view",
        "type": "function",
    }
]

GRID_ZONE_FIELD_INDEX = 5

# Errors worth retrying in place: the request never got a usable answer
NETWORK_ERRORS = (
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
    TimeoutError,
    ConnectionError,
)


def event_topic(signature: str) -> str:
    """Keccak-256 topic hash of a canonical event signature, 0x-prefixed."""
    return Web3.to_hex(Web3.keccak(text=signature))


def to_hex_str(value: Union[bytes, bytearray, str, None]) -> str:
    if value is None:
        return "0x"
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    value = str(value).lower()
    return value if value.startswith("0x") else "0x" + value


def normalize_log(entry) -> RawLog:
    """Convert a web3 log (AttributeDict or plain dict) into a RawLog."""
    return RawLog(
        address=str(entry["address"]).lower(),
        topics=[to_hex_str(topic) for topic in entry["topics"]],
        data=to_hex_str(entry["data"]),
        block_number=int(entry["blockNumber"]),
        log_index=int(entry["logIndex"]),
        transaction_hash=to_hex_str(entry["transactionHash"]),
    )


class ChainLogReader:
    """Read-only access to the marketplace contract's logs and state."""

    def __init__(
        self,
        w3: Web3,
        marketplace_address: str,
        max_retries: int = 3,
        retry_backoff_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
        timestamp_cache_size: int = 4096,
    ):
        """
        Initialize reader.

        Args:
            w3: Connected Web3 instance
            marketplace_address: Marketplace contract address
            max_retries: Retries per call for network errors
            retry_backoff_seconds: Initial backoff, doubled on every retry
            sleep: Sleep function (replaceable in tests)
            timestamp_cache_size: Number of block timestamps kept in memory
        """
        self.w3 = w3
        self.marketplace_address = Web3.to_checksum_address(marketplace_address)
        self.max_retries = max_retries
        self.retry_backoff_seconds = retry_backoff_seconds
        self._sleep = sleep
        self._timestamp_cache: "OrderedDict[int, int]" = OrderedDict()
        self._timestamp_cache_size = timestamp_cache_size
        self._contract = w3.eth.contract(address=self.marketplace_address, abi=MARKETPLACE_ABI)
        self._topics: Dict[str, str] = {
            signature: event_topic(signature) for signature in MARKETPLACE_EVENT_SIGNATURES
        }

    @classmethod
    def from_config(cls, chain_config: dict) -> "ChainLogReader":
        """Build a reader with an HTTP provider configured like the rest of the stack."""
        rpc_url = chain_config['rpc_url']
        proxy = chain_config.get('proxy') or os.environ.get('ENERGY_INDEXER_RPC_PROXY')
        verify_ssl = chain_config.get('verify_ssl', True)

        session = requests.Session()
        session.verify = verify_ssl
        if proxy:
            session.proxies = {'http': proxy, 'https': proxy}
            log.info(f"Using proxy for chain RPC: {proxy} (SSL verify: {verify_ssl})")

        request_kwargs = {'timeout': float(chain_config.get('timeout', 30.0))}
        provider = Web3.HTTPProvider(rpc_url, request_kwargs=request_kwargs, session=session)
        w3 = Web3(provider)

        return cls(
            w3,
            chain_config['marketplace_address'],
            max_retries=int(chain_config.get('max_retries', 3)),
            retry_backoff_seconds=float(chain_config.get('retry_backoff_seconds', 1.0)),
        )

    def _call(self, description: str, fn: Callable, *args, **kwargs):
        """
        Run an RPC call, retrying network errors with exponential backoff.

        Raises:
            ChainUnavailableError: Network errors persisted through every retry
            TransientNetworkError: The node answered with an error
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_retries + 1):
            try:
                return fn(*args, **kwargs)
            except NETWORK_ERRORS as e:
                last_error = e
                if attempt >= self.max_retries:
                    break
                delay = self.retry_backoff_seconds * (2 ** attempt)
                log.warning(
                    f"{description} failed (attempt {attempt + 1}/{self.max_retries + 1}): {e}; "
                    f"retrying in {delay:.1f}s"
                )
                self._sleep(delay)
            except (Web3Exception, ValueError) as e:
                raise TransientNetworkError(f"{description} rejected by node: {e}") from e

        raise ChainUnavailableError(
            f"{description} failed after {self.max_retries + 1} attempt(s): {last_error}"
        ) from last_error

    def current_block_height(self) -> int:
        return int(self._call("eth_blockNumber", lambda: self.w3.eth.block_number))

    def fetch_logs(
        self,
        event_signature: Union[str, Sequence[str]],
        from_block: int,
        to_block: int,
        contract_address: Optional[str] = None,
    ) -> List[RawLog]:
        """
        Fetch logs for one or more event signatures in a block range.

        Args:
            event_signature: Canonical signature, or a list matched as OR
            from_block: First block (inclusive)
            to_block: Last block (inclusive)
            contract_address: Emitting contract (defaults to the marketplace)

        Returns:
            Logs ordered by (block_number, log_index)
        """
        if from_block > to_block:
            return []

        signatures = [event_signature] if isinstance(event_signature, str) else list(event_signature)
        topics = [self._topics.get(sig) or event_topic(sig) for sig in signatures]
        address = Web3.to_checksum_address(contract_address) if contract_address else self.marketplace_address

        log_filter = {
            'fromBlock': from_block,
            'toBlock': to_block,
            'address': address,
            'topics': [topics[0] if len(topics) == 1 else topics],
        }

        entries = self._call(
            f"eth_getLogs[{from_block}-{to_block}]",
            self.w3.eth.get_logs,
            log_filter,
        )
        raw_logs = [normalize_log(entry) for entry in entries]
        return sorted(raw_logs, key=lambda raw: raw.sort_key)

    def fetch_marketplace_logs(self, from_block: int, to_block: int) -> List[RawLog]:
        """All four marketplace events in one ordered sequence."""
        return self.fetch_logs(MARKETPLACE_EVENT_SIGNATURES, from_block, to_block)

    def block_timestamp(self, block_number: int) -> int:
        cached = self._timestamp_cache.get(block_number)
        if cached is not None:
            self._timestamp_cache.move_to_end(block_number)
            return cached

        block = self._call(f"eth_getBlockByNumber[{block_number}]", self.w3.eth.get_block, block_number)
        timestamp = int(block['timestamp'])

        self._timestamp_cache[block_number] = timestamp
        if len(self._timestamp_cache) > self._timestamp_cache_size:
            self._timestamp_cache.popitem(last=False)
        return timestamp

    def listing_grid_zone(self, listing_id: int) -> int:
        """Grid zone stored on-chain for a listing."""
        listing = self._call(
            f"listings({listing_id})",
            lambda: self._contract.functions.listings(listing_id).call(),
        )
        return int(listing[GRID_ZONE_FIELD_INDEX])

    def is_connected(self) -> bool:
        try:
            return bool(self.w3.is_connected())
        except NETWORK_ERRORS:
            return False
