"""
FastAPI dependency injection.

Provides shared dependencies for API routes.
"""

from typing import Optional
import logging

from energy_indexer.core.config_loader import load_config
from energy_indexer.core.database_handler import DatabaseHandler
from energy_indexer.core.logger import setup_logger_from_config
from energy_indexer.core.main import DEFAULT_CONFIG_PATH, create_sync_scheduler
from energy_indexer.core.monetary import MonetaryConverter
from energy_indexer.core.sync_scheduler import SyncScheduler
from energy_indexer.services.listing_service import ListingQueryService

logger = logging.getLogger(__name__)


# Global instances (initialized on startup)
_config: Optional[dict] = None
_converter: Optional[MonetaryConverter] = None
_listing_service: Optional[ListingQueryService] = None
_sync_scheduler: Optional[SyncScheduler] = None


def initialize_services(config: Optional[dict] = None):
    """
    Initialize all services on application startup.

    This should be called once when the FastAPI app starts. When the
    ``indexer.enabled`` flag is set, the background sync loop is started in
    the same process; it is the only writer to the store.

    Args:
        config: Pre-loaded configuration (loaded from disk when omitted)
    """
    global _config, _converter, _listing_service, _sync_scheduler

    _config = config or load_config(DEFAULT_CONFIG_PATH)
    setup_logger_from_config(_config)
    logger.info("Configuration loaded")

    DatabaseHandler.initialize_database(_config['database']['url'])
    zones = DatabaseHandler.load_grid_zones(_config['grid_zones'])
    logger.info(f"Database initialized with {zones} grid zone(s)")

    _converter = MonetaryConverter.from_config(_config['pricing'])
    _listing_service = ListingQueryService(_converter)

    if _config['indexer'].get('enabled', True):
        _sync_scheduler = create_sync_scheduler(_config, _converter)
        _sync_scheduler.start()
    else:
        logger.info("Indexer disabled via configuration; serving existing data only")

    logger.info("All services initialized successfully")


def shutdown_services():
    """Stop the background indexer between cycles and release the database."""
    global _sync_scheduler

    if _sync_scheduler is not None:
        _sync_scheduler.stop()
        _sync_scheduler = None

    DatabaseHandler.close_database()


def get_listing_service() -> ListingQueryService:
    """Get listing query service instance."""
    if _listing_service is None:
        raise RuntimeError("Services not initialized. Call initialize_services() first.")
    return _listing_service


def get_sync_scheduler() -> Optional[SyncScheduler]:
    """Get the background scheduler, or None when indexing runs elsewhere."""
    return _sync_scheduler
