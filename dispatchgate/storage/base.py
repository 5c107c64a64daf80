from __future__ import annotations

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence


class StorageBackend(ABC):
    """
    Backend-agnostic storage interface for tickets, logs and the outbox.

    Queries use sqlite-style ``?`` placeholders on every backend.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @contextmanager
    @abstractmethod
    def connect(self) -> Iterator[Any]:
        raise NotImplementedError

    @abstractmethod
    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        raise NotImplementedError

    @abstractmethod
    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @contextmanager
    @abstractmethod
    def transaction(self) -> Iterator["StorageBackend"]:
        """
        Execute multiple statements atomically.
        Inside this context, execute()/fetch*() must use the same connection and
        must not auto-commit per statement.
        """
        raise NotImplementedError

    @abstractmethod
    def row_lock_clause(self, *, skip_locked: bool = False) -> str:
        """
        Suffix appended to a SELECT to lock the returned rows for the current
        transaction. ``skip_locked`` claims only rows no other transaction holds.
        """
        raise NotImplementedError

    @abstractmethod
    def is_unique_violation(self, exc: BaseException) -> bool:
        raise NotImplementedError
