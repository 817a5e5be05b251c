"""
Database Connection Pool

Hands out SqliteCaseRepository instances to request handlers and sync
workers so that every thread works on its own SQLite connection.

Features:
- Connection reuse
- Configurable pool size
- Health check on acquire, replacing broken connections
- Graceful shutdown with connection cleanup
"""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from queue import Empty, Queue
from threading import Lock
from types import TracebackType

from case_router.core.config import StorageSettings

from .sqlite import SqliteCaseRepository

LOGGER = logging.getLogger(__name__)


class ConnectionPool:
    """Thread-safe pool of SqliteCaseRepository instances."""

    def __init__(self, settings: StorageSettings, pool_size: int | None = None):
        """
        Initialize connection pool.

        Args:
            settings: Storage settings containing database path
            pool_size: Number of repositories kept (default: settings.pool_size)
        """
        self.settings = settings
        self.pool_size = pool_size or settings.pool_size
        self._pool: Queue[SqliteCaseRepository] = Queue(maxsize=self.pool_size)
        self._lock = Lock()
        self._group_lock = Lock()
        self._created_count = 0
        self._closed = False

        for _ in range(self.pool_size):
            self._pool.put(self._create_repository())

        LOGGER.info("Initialized connection pool with %d connections", self.pool_size)

    def _create_repository(self) -> SqliteCaseRepository:
        with self._lock:
            if self._closed:
                raise RuntimeError("Connection pool is closed")
            repository = SqliteCaseRepository(self.settings)
            self._created_count += 1
            LOGGER.debug("Created connection #%d", self._created_count)
            return repository

    def _validate(self, repository: SqliteCaseRepository) -> bool:
        try:
            repository.ping()
            return True
        except sqlite3.Error:
            LOGGER.warning("Connection validation failed, will create new connection")
            return False

    @contextmanager
    def acquire(self, timeout: float = 10.0) -> Iterator[SqliteCaseRepository]:
        """
        Acquire a repository from the pool.

        Args:
            timeout: Maximum seconds to wait for a connection (default: 10)

        Raises:
            RuntimeError: If pool is closed
            TimeoutError: If no connection available within timeout
        """
        if self._closed:
            raise RuntimeError("Connection pool is closed")

        repository = self._take(timeout)
        try:
            yield repository
        finally:
            self._release(repository)

    @contextmanager
    def acquire_many(
        self, count: int, timeout: float = 10.0
    ) -> Iterator[list[SqliteCaseRepository]]:
        """
        Acquire ``count`` repositories as one unit.

        Group borrowers take their connections one group at a time, so two
        of them can never each hold part of what the other is waiting for.

        Raises:
            ValueError: If ``count`` exceeds the pool size
            RuntimeError: If pool is closed
            TimeoutError: If the group is not complete within timeout
        """
        if count > self.pool_size:
            raise ValueError(
                f"Cannot borrow {count} connections from a pool of {self.pool_size}"
            )
        if self._closed:
            raise RuntimeError("Connection pool is closed")

        deadline = time.monotonic() + timeout
        repositories: list[SqliteCaseRepository] = []
        if not self._group_lock.acquire(timeout=timeout):
            raise TimeoutError(f"Could not acquire connections within {timeout} seconds")
        try:
            while len(repositories) < count:
                repositories.append(self._take(max(deadline - time.monotonic(), 0)))
        except BaseException:
            for repository in repositories:
                self._release(repository)
            raise
        finally:
            self._group_lock.release()

        try:
            yield repositories
        finally:
            for repository in repositories:
                self._release(repository)

    def _take(self, timeout: float) -> SqliteCaseRepository:
        try:
            repository = self._pool.get(timeout=timeout)
        except Empty as exc:
            raise TimeoutError(
                f"Could not acquire connection within {timeout:.1f} seconds"
            ) from exc

        if not self._validate(repository):
            repository.close()
            repository = self._create_repository()
        return repository

    def _release(self, repository: SqliteCaseRepository) -> None:
        if self._closed:
            repository.close()
        else:
            self._pool.put(repository)

    def close(self) -> None:
        """Close all connections in the pool."""
        with self._lock:
            if self._closed:
                return
            self._closed = True

            closed_count = 0
            while True:
                try:
                    repository = self._pool.get_nowait()
                except Empty:
                    break
                repository.close()
                closed_count += 1

            LOGGER.info("Closed connection pool (%d connections closed)", closed_count)

    def __enter__(self) -> ConnectionPool:
        """Enter context manager scope."""
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Exit context manager scope and close pool."""
        self.close()

    @property
    def size(self) -> int:
        """Number of idle repositories."""
        return self._pool.qsize()

    @property
    def is_closed(self) -> bool:
        return self._closed


__all__ = ["ConnectionPool"]
