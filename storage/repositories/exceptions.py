"""
Repository Layer Exceptions.

Every SQLAlchemy error raised inside a repository is re-raised
as one of these, so reconciliation and retention code never
catches driver-specific types.
"""

from typing import Any, Optional


class RepositoryError(Exception):
    """Base class; carries the repository and the operation that failed."""

    def __init__(self, repository: str, operation: str, message: str, cause: Optional[str] = None) -> None:
        self.repository = repository
        self.operation = operation
        self.cause = cause
        super().__init__(f"{repository}.{operation}: {message}")


class DuplicateRecordError(RepositoryError):
    """A unique key rejected an insert that was not expected to collide."""

    def __init__(self, repository: str, key: str, value: Any) -> None:
        super().__init__(repository, "insert", f"{key}={value} already exists")
        self.key = key
        self.value = value


class StorageUnavailableError(RepositoryError):
    """The database could not be reached or rejected the connection."""

    def __init__(self, repository: str, operation: str, cause: str) -> None:
        super().__init__(repository, operation, "database unavailable", cause)


class QueryError(RepositoryError):
    """Any other statement failure."""

    def __init__(self, repository: str, operation: str, cause: str) -> None:
        super().__init__(repository, operation, cause, cause)
