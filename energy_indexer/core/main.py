"""
Main entry point for the headless marketplace indexer.

Initializes storage, replays history from the checkpoint, then follows new
blocks until interrupted.
"""

import argparse
import os
import signal
import sys
from typing import Optional

from energy_indexer.core.blockchain.event_decoder import EventDecoder
from energy_indexer.core.blockchain.log_reader import ChainLogReader
from energy_indexer.core.config_loader import load_config
from energy_indexer.core.database_handler import DatabaseHandler
from energy_indexer.core.logger import log, setup_logger_from_config
from energy_indexer.core.monetary import MonetaryConverter
from energy_indexer.core.reconciliation import ReconciliationEngine
from energy_indexer.core.sync_scheduler import SyncScheduler

DEFAULT_CONFIG_PATH = os.environ.get('ENERGY_INDEXER_CONFIG', 'config.yaml')


def create_sync_scheduler(
    config: dict,
    converter: MonetaryConverter,
    reader: Optional[ChainLogReader] = None
) -> SyncScheduler:
    """
    Wire reader, decoder, engine and scheduler from configuration.

    Args:
        config: Validated configuration dictionary
        converter: Monetary converter shared with the read side
        reader: Pre-built chain reader (optional)

    Returns:
        SyncScheduler instance (not started)
    """
    chain_config = config['chain']
    indexer_config = config['indexer']

    if reader is None:
        reader = ChainLogReader.from_config(chain_config)

    decoder = EventDecoder(contract_address=chain_config['marketplace_address'])
    engine = ReconciliationEngine(
        reader=reader,
        converter=converter,
        listing_ttl_seconds=int(indexer_config['listing_ttl_seconds']),
        retry_limit=int(indexer_config['event_retry_limit']),
        deferred_attempt_limit=int(indexer_config['deferred_attempt_limit']),
    )
    return SyncScheduler.from_config(config, reader, decoder, engine)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Energy marketplace event indexer")
    parser.add_argument('--config', default=DEFAULT_CONFIG_PATH, help="Path to config.yaml")
    parser.add_argument('--once', action='store_true',
                        help="Catch up to the current head and exit instead of following")
    return parser.parse_args(argv)


def main(argv=None):
    """Program entry point."""
    args = parse_args(argv)
    scheduler: Optional[SyncScheduler] = None

    try:
        config = load_config(args.config)
        logger = setup_logger_from_config(config)
        logger.info("Configuration loaded")

        DatabaseHandler.initialize_database(config['database']['url'])
        zones = DatabaseHandler.load_grid_zones(config['grid_zones'])
        logger.info(f"Database ready, {zones} grid zone(s) loaded")

        converter = MonetaryConverter.from_config(config['pricing'])
        scheduler = create_sync_scheduler(config, converter)

        if args.once:
            cycles = scheduler.catch_up()
            logger.info(
                f"Catch-up finished after {cycles} cycle(s); "
                f"checkpoint={DatabaseHandler.get_checkpoint()}"
            )
            return

        def signal_handler(sig, frame):
            logger.info("Received exit signal, shutting down...")
            scheduler.stop()
            DatabaseHandler.close_database()
            sys.exit(0)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        scheduler.start()

        logger.info("Indexer running, press Ctrl+C to exit...")
        while scheduler.is_running:
            scheduler.wait(1.0)

    except FileNotFoundError as e:
        log.error(f"Configuration file error: {e}")
        sys.exit(1)
    except Exception as e:
        if scheduler:
            scheduler.stop()
        log.error(f"Indexer startup failed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
