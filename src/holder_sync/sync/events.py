"""Best-effort recording of operator-visible sync events."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError

from holder_sync.storage.repos import SyncEventDTO, SyncEventRepository
from holder_sync.sync.models import Severity, SyncEventType

if TYPE_CHECKING:
    from holder_sync.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.LOW: logging.WARNING,
    Severity.MEDIUM: logging.WARNING,
    Severity.HIGH: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
}


class SyncEventRecorder:
    """Logs sync events and appends them to the ``sync_events`` table.

    Writes use their own session so that an event survives the rollback
    of the work that caused it. A failed write is logged and swallowed.
    """

    def __init__(self, db: DatabaseManager | None) -> None:
        self._db = db

    async def record(
        self,
        event_type: SyncEventType,
        severity: Severity,
        message: str,
        *,
        pool_id: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        logger.log(
            _LOG_LEVELS[severity],
            "[%s] %s (pool=%s, details=%s)",
            event_type.value,
            message,
            pool_id,
            details,
        )
        if self._db is None:
            return
        try:
            async with self._db.get_async_session() as session:
                await SyncEventRepository(session).insert(
                    SyncEventDTO(
                        event_type=event_type.value,
                        severity=severity.value,
                        message=message,
                        pool_id=pool_id,
                        details=details,
                    )
                )
        except SQLAlchemyError as e:
            logger.warning("Failed to record %s event for pool %s: %s", event_type.value, pool_id, e)
