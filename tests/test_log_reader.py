"""Tests for ChainLogReader against a mocked web3 client."""

import unittest
from unittest.mock import Mock

import requests

from marketplace_fakes import MARKETPLACE

from energy_indexer.core.blockchain.log_reader import (
    MARKETPLACE_EVENT_SIGNATURES,
    ChainLogReader,
    event_topic,
    normalize_log,
)
from energy_indexer.core.exceptions import ChainUnavailableError, TransientNetworkError


def web3_log(block, index, topic=b"\x01" * 32):
    return {
        'address': "0x5FbDB2315678afecb367f032d93F642f64180aa3",
        'topics': [topic],
        'data': b"\x00" * 32,
        'blockNumber': block,
        'logIndex': index,
        'transactionHash': bytes([block]) * 32,
    }


class ChainLogReaderTests(unittest.TestCase):
    def setUp(self):
        self.w3 = Mock()
        self.sleep = Mock()
        self.reader = ChainLogReader(
            self.w3, MARKETPLACE, max_retries=2, retry_backoff_seconds=1.0, sleep=self.sleep
        )

    def test_event_topic_matches_known_hash(self):
        self.assertEqual(
            event_topic("Transfer(address,address,uint256)"),
            "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef",
        )

    def test_normalize_log(self):
        raw = normalize_log(web3_log(5, 2))
        self.assertEqual(raw.address, MARKETPLACE)
        self.assertEqual(raw.topics, ["0x" + "01" * 32])
        self.assertEqual(raw.data, "0x" + "00" * 32)
        self.assertEqual((raw.block_number, raw.log_index), (5, 2))

    def test_fetch_marketplace_logs_sorted_and_filtered(self):
        self.w3.eth.get_logs.return_value = [web3_log(9, 0), web3_log(3, 4), web3_log(3, 1)]

        logs = self.reader.fetch_marketplace_logs(0, 10)

        self.assertEqual([log.sort_key for log in logs], [(3, 1), (3, 4), (9, 0)])
        log_filter = self.w3.eth.get_logs.call_args[0][0]
        self.assertEqual(log_filter['fromBlock'], 0)
        self.assertEqual(log_filter['toBlock'], 10)
        self.assertEqual(log_filter['address'].lower(), MARKETPLACE)
        self.assertEqual(
            log_filter['topics'],
            [[event_topic(signature) for signature in MARKETPLACE_EVENT_SIGNATURES]],
        )

    def test_empty_range_skips_rpc(self):
        self.assertEqual(self.reader.fetch_marketplace_logs(10, 9), [])
        self.w3.eth.get_logs.assert_not_called()

    def test_network_errors_are_retried(self):
        self.w3.eth.get_block.side_effect = [
            requests.exceptions.ConnectionError("reset"),
            {'timestamp': 1_704_067_200},
        ]

        self.assertEqual(self.reader.block_timestamp(7), 1_704_067_200)
        self.sleep.assert_called_once_with(1.0)

    def test_block_timestamps_are_cached(self):
        self.w3.eth.get_block.return_value = {'timestamp': 100}

        self.reader.block_timestamp(7)
        self.reader.block_timestamp(7)

        self.assertEqual(self.w3.eth.get_block.call_count, 1)

    def test_chain_unavailable_after_retries(self):
        self.w3.eth.get_logs.side_effect = requests.exceptions.Timeout("timed out")

        with self.assertLogs('energy_indexer', level='WARNING'):
            with self.assertRaises(ChainUnavailableError):
                self.reader.fetch_marketplace_logs(0, 10)

        self.assertEqual(self.w3.eth.get_logs.call_count, 3)
        self.assertEqual([c.args[0] for c in self.sleep.call_args_list], [1.0, 2.0])

    def test_node_errors_are_not_retried(self):
        self.w3.eth.get_logs.side_effect = ValueError({'code': -32005, 'message': 'query returned more than 10000 results'})

        with self.assertRaises(TransientNetworkError):
            self.reader.fetch_marketplace_logs(0, 10)

        self.assertEqual(self.w3.eth.get_logs.call_count, 1)

    def test_listing_grid_zone(self):
        contract = self.w3.eth.contract.return_value
        contract.functions.listings.return_value.call.return_value = (
            3, "0x" + "0a" * 20, 3, 100, 10 ** 14, 4, 0, 0, True
        )

        self.assertEqual(self.reader.listing_grid_zone(3), 4)
        contract.functions.listings.assert_called_once_with(3)


if __name__ == "__main__":
    unittest.main()
