"""Database adapter abstraction.

Provides a database-agnostic interface for the repository layer.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, List, Dict, Optional


class DatabaseAdapter(ABC):
    """Abstract database adapter for SQL operations."""

    @abstractmethod
    def execute(self, query: str, params: tuple = ()) -> Any:
        """
        Execute a statement.

        Args:
            query: SQL statement (``?`` placeholders)
            params: Statement parameters

        Returns:
            Database cursor or result
        """
        raise NotImplementedError

    @abstractmethod
    def fetchone(self, query: str, params: tuple = ()) -> Optional[Dict[str, Any]]:
        """Fetch a single row as dictionary, or None."""
        raise NotImplementedError

    @abstractmethod
    def fetchall(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Fetch all rows as a list of dictionaries."""
        raise NotImplementedError

    @abstractmethod
    def transaction(self) -> AbstractContextManager[None]:
        """
        Context manager for one atomic unit of work.

        Commits on normal exit, rolls back if the block raises. Nested use
        joins the outer transaction.
        """
        raise NotImplementedError

    @abstractmethod
    def executescript(self, script: str) -> None:
        """Execute multiple SQL statements (schema creation)."""
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        """Close database connection."""
        raise NotImplementedError
