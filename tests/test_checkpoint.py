"""Tests for checkpoint persistence and resume."""

import pytest

from marketplace_fakes import temporary_database

from energy_indexer.core.database_handler import DatabaseHandler
from energy_indexer.core.logger import log
from energy_indexer.core.models import GridZone, SyncCheckpoint


def test_checkpoint():
    """Checkpoint starts empty, advances, and survives a reconnect."""
    with temporary_database():
        # 1. No checkpoint before the first cycle
        checkpoint = DatabaseHandler.get_checkpoint()
        log.info(f"Initial checkpoint: {checkpoint}")
        assert checkpoint is None, "initial checkpoint should be None"

        # 2. Create
        DatabaseHandler.update_checkpoint(100)
        assert DatabaseHandler.get_checkpoint() == 100

        # 3. Advance
        DatabaseHandler.update_checkpoint(250)
        assert DatabaseHandler.get_checkpoint() == 250

        # 4. Re-writing the same block is allowed
        DatabaseHandler.update_checkpoint(250)
        assert DatabaseHandler.get_checkpoint() == 250

        # Single row keyed by name
        assert SyncCheckpoint.select().count() == 1


def test_checkpoint_never_moves_backwards():
    with temporary_database():
        DatabaseHandler.update_checkpoint(500)

        with pytest.raises(ValueError):
            DatabaseHandler.update_checkpoint(499)

        assert DatabaseHandler.get_checkpoint() == 500


def test_checkpoint_survives_restart(tmp_path):
    db_url = f"sqlite:///{tmp_path / 'indexer.db'}"

    DatabaseHandler.initialize_database(db_url)
    DatabaseHandler.update_checkpoint(1234)
    DatabaseHandler.close_database()

    DatabaseHandler.initialize_database(db_url)
    try:
        assert DatabaseHandler.get_checkpoint() == 1234
    finally:
        DatabaseHandler.close_database()


def test_grid_zones_are_upserted():
    with temporary_database():
        zones = [{'zone_id': 1, 'name': 'Civil Lines', 'city': 'Jaipur', 'base_price_display': '8.5'}]
        assert DatabaseHandler.load_grid_zones(zones) == 1

        zones[0]['base_price_display'] = '9.0'
        DatabaseHandler.load_grid_zones(zones)

        zone = GridZone.get(GridZone.zone_id == 1)
        assert zone.base_price_display == '9.0'
        assert GridZone.select().count() == 1
