# autotrader/database/__init__.py
from .session import DatabaseManager
from .persistence import (
    InMemoryPersistence, PersistenceSink, SqlAlchemyPersistence, account_from_snapshot_dict,
)

__all__ = [
    'DatabaseManager',
    'InMemoryPersistence',
    'PersistenceSink',
    'SqlAlchemyPersistence',
    'account_from_snapshot_dict',
]
