"""Generic repository interface.

``IRepository[T]`` is the base contract every module-level repository
interface extends.  Services depend on these abstractions, never on the
Django ORM directly, so unit tests can hand them a ``MagicMock``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, Generic, Optional, TypeVar

T = TypeVar("T")


class IRepository(ABC, Generic[T]):
    """Base generic repository contract.

    Type parameter ``T`` is the aggregate root managed by the repository.
    Aggregates here are never deleted, so there is no delete operation.
    """

    @abstractmethod
    def get_by_id(self, id: str) -> Optional[T]:
        """Retrieve an aggregate by its primary key, or ``None``."""

    @abstractmethod
    def list(self, filters: Optional[Dict[str, Any]] = None) -> Any:
        """List aggregates with optional ORM-style filters."""
