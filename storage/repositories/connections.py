"""
Exchange Connection Repository.

============================================================
PURPOSE
============================================================
Access to UserExchange rows: lookup, activation state and
sync cursors.

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from storage.models.journal import UserExchange
from storage.repositories.base import BaseRepository


class ConnectionRepository(BaseRepository[UserExchange]):
    """Repository for user exchange connections."""

    def __init__(self, session: Session) -> None:
        super().__init__(session, UserExchange, "ConnectionRepository")

    def get(self, connection_id: int) -> Optional[UserExchange]:
        return self._get(connection_id)

    def get_for_user(self, user_id: int, exchange: str) -> Optional[UserExchange]:
        stmt = select(UserExchange).where(
            UserExchange.user_id == user_id,
            UserExchange.exchange == exchange,
        )
        return self._execute_scalar(stmt)

    def create_connection(
        self,
        user_id: int,
        exchange: str,
        sync_settings: Optional[Dict[str, Any]] = None,
        is_active: bool = True,
    ) -> UserExchange:
        """
        Create a connection.

        Raises:
            DuplicateRecordError: If (user_id, exchange) already exists
        """
        return self._add(
            UserExchange(user_id=user_id, exchange=exchange, sync_settings=sync_settings, is_active=is_active),
            key="user_id+exchange",
            value=f"{user_id}/{exchange}",
        )

    def list_active(self, exchange: Optional[str] = None) -> List[UserExchange]:
        stmt = select(UserExchange).where(UserExchange.is_active.is_(True))
        if exchange:
            stmt = stmt.where(UserExchange.exchange == exchange)
        return self._execute_query(stmt.order_by(UserExchange.id))

    def deactivate(self, connection: UserExchange, reason: str) -> None:
        """Mark the connection inactive (auth/permission failure)."""
        connection.deactivate(reason)
        self._session.flush()
        self._logger.warning(
            f"Deactivated connection user={connection.user_id} "
            f"exchange={connection.exchange}: {reason}"
        )

    def mark_synced(
        self,
        connection: UserExchange,
        synced_at: datetime,
        last_execution_time: Optional[datetime] = None,
    ) -> None:
        """Advance the sync cursors; the execution cursor never moves backwards."""
        connection.last_sync_at = synced_at
        if last_execution_time is not None and (
            connection.last_execution_time is None
            or last_execution_time > connection.last_execution_time
        ):
            connection.last_execution_time = last_execution_time
        self._session.flush()

    def mark_quick_synced(self, connection: UserExchange, synced_at: datetime) -> None:
        """Quick sync reads a trailing window only, so neither full-sync cursor moves."""
        connection.last_quick_sync_at = synced_at
        self._session.flush()
