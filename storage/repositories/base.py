"""
Base Repository.

============================================================
CONTRACT
============================================================
- The session is injected; repositories flush, the caller
  (transaction_scope) commits.
- Replays of already-stored exchange data go through
  _add_if_absent, which turns a unique-key hit into None.
- Any other SQLAlchemy error leaves as a RepositoryError.

============================================================
"""

import logging
from typing import Any, Generic, List, Optional, Type, TypeVar

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from storage.models.base import Base
from storage.repositories.exceptions import (
    DuplicateRecordError,
    QueryError,
    StorageUnavailableError,
)


ModelT = TypeVar("ModelT", bound=Base)


class BaseRepository(Generic[ModelT]):
    """Shared statement helpers for one mapped journal table."""

    def __init__(self, session: Session, model: Type[ModelT], name: str) -> None:
        self._session = session
        self._model = model
        self._name = name
        self._logger = logging.getLogger(f"repository.{name}")

    def _wrap(self, error: SQLAlchemyError, operation: str, key: str = "", value: Any = None) -> Exception:
        if isinstance(error, IntegrityError):
            self._logger.warning(f"{operation} rejected by unique key {key}={value}")
            return DuplicateRecordError(self._name, key or "unique", value)
        self._logger.error(f"{operation} failed: {error}", exc_info=True)
        if isinstance(error, OperationalError):
            return StorageUnavailableError(self._name, operation, str(error))
        return QueryError(self._name, operation, str(error))

    def _add(self, entity: ModelT, key: str = "", value: Any = None) -> ModelT:
        """Insert and flush; a unique-key collision raises DuplicateRecordError."""
        try:
            with self._session.begin_nested():
                self._session.add(entity)
            return entity
        except SQLAlchemyError as e:
            raise self._wrap(e, "add", key, value) from e

    def _add_if_absent(self, entity: ModelT) -> Optional[ModelT]:
        """
        Insert inside a savepoint. Returns None when an equal row
        already exists, which is how batch sync and the stream
        share a table without locks.
        """
        try:
            with self._session.begin_nested():
                self._session.add(entity)
            return entity
        except IntegrityError:
            self._logger.debug(f"already stored: {entity}")
            return None
        except SQLAlchemyError as e:
            raise self._wrap(e, "add_if_absent") from e

    def _get(self, record_id: int) -> Optional[ModelT]:
        try:
            return self._session.get(self._model, record_id)
        except SQLAlchemyError as e:
            raise self._wrap(e, "get") from e

    def _count(self, *criteria: Any) -> int:
        stmt = select(func.count()).select_from(self._model)
        if criteria:
            stmt = stmt.where(*criteria)
        try:
            return self._session.execute(stmt).scalar() or 0
        except SQLAlchemyError as e:
            raise self._wrap(e, "count") from e

    def _execute_query(self, stmt: Any) -> List[ModelT]:
        try:
            return list(self._session.execute(stmt).scalars().all())
        except SQLAlchemyError as e:
            raise self._wrap(e, "query") from e

    def _execute_scalar(self, stmt: Any) -> Optional[Any]:
        try:
            return self._session.execute(stmt).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._wrap(e, "query_scalar") from e

    def _execute_rows(self, stmt: Any) -> List[Any]:
        try:
            return list(self._session.execute(stmt).all())
        except SQLAlchemyError as e:
            raise self._wrap(e, "query_rows") from e

    def _execute_delete(self, stmt: Any) -> int:
        """Bulk DELETE; loaded objects are not synchronized."""
        try:
            result = self._session.execute(stmt.execution_options(synchronize_session=False))
            return result.rowcount or 0
        except SQLAlchemyError as e:
            raise self._wrap(e, "delete") from e
