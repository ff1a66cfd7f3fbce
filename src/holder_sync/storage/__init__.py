"""Storage layer - Database schemas and repositories."""

from holder_sync.storage.database import (
    DatabaseManager,
    build_engine,
    normalize_async_database_url,
)
from holder_sync.storage.models import (
    Base,
    PoolMetricsModel,
    PoolModel,
    SyncEventModel,
    TokenHolderModel,
    TokenPriceModel,
)
from holder_sync.storage.repos import (
    HolderRecordDTO,
    HolderRepository,
    PersistenceError,
    PoolDTO,
    PoolMetricsDTO,
    PoolMetricsRepository,
    PoolRepository,
    SyncEventDTO,
    SyncEventRepository,
    TokenPriceDTO,
    TokenPriceRepository,
)

__all__ = [
    "Base",
    "DatabaseManager",
    "HolderRecordDTO",
    "HolderRepository",
    "PersistenceError",
    "PoolDTO",
    "PoolMetricsDTO",
    "PoolMetricsModel",
    "PoolMetricsRepository",
    "PoolModel",
    "PoolRepository",
    "SyncEventDTO",
    "SyncEventModel",
    "SyncEventRepository",
    "TokenHolderModel",
    "TokenPriceDTO",
    "TokenPriceModel",
    "TokenPriceRepository",
    "build_engine",
    "normalize_async_database_url",
]
