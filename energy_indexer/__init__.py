"""
Energy Indexer: off-chain mirror of an on-chain energy-credit marketplace

Components:
- Indexer: replays and tails marketplace event logs into a local store
- API: FastAPI read service over the reconciled listings, orders and zones
"""

__version__ = "0.1.0"
