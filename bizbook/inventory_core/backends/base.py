"""
Base protocols for persistence backends.

This module defines the Backend and Collection protocols every storage
backend implements, the shared connection gate, and the backend factory.

A Backend owns one connection (pool) per process and hands out one
Collection per entity. Entity repositories hold a Collection and never
talk to a client library directly.

Invariants:
    - Collections receive records that already passed EntityDef.validate()
    - Unique-index violations surface as ConflictError(retryable=False)
    - Failed optimistic checks surface as ConflictError(retryable=True)
    - Backend-native exceptions never escape a backend module
    - Every call awaits the connection gate before touching the client

How to change safely:
    - Protocol changes require updating all three backends
    - Add parity tests in tests/integration when adding a Collection method
"""

from __future__ import annotations

import asyncio
import logging
import random
from abc import abstractmethod
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from ..errors import BackendUnavailableError, ConfigurationError
from ..transactions.retry import RetryPolicy

if TYPE_CHECKING:
    from ..config import AppConfig
    from ..schema.types import EntityDef
    from ..transactions.handles import TransactionHandle

logger = logging.getLogger(__name__)


@runtime_checkable
class Collection(Protocol):
    """Storage for the records of one entity."""

    @abstractmethod
    async def get(self, record_id: str, txn: Optional[TransactionHandle] = None) -> Optional[dict]:
        """Record by id, or None."""
        ...

    @abstractmethod
    async def find(
        self,
        filter: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> List[dict]:
        """Records matching a filter, honoring {limit, skip, sort}."""
        ...

    @abstractmethod
    async def count(
        self, filter: Optional[Dict[str, Any]] = None, txn: Optional[TransactionHandle] = None
    ) -> int:
        """Number of records matching a filter."""
        ...

    @abstractmethod
    async def group_count(self, path: str) -> Dict[str, int]:
        """Record counts grouped by the value at a path (missing values skipped)."""
        ...

    @abstractmethod
    async def insert(self, record: dict, txn: Optional[TransactionHandle] = None) -> dict:
        """Insert a new record (id already assigned)."""
        ...

    @abstractmethod
    async def replace(
        self,
        record: dict,
        expected: Optional[Dict[str, Any]] = None,
        txn: Optional[TransactionHandle] = None,
    ) -> Optional[dict]:
        """Overwrite a record; None if it does not exist.

        expected maps field -> value that the stored record must still hold.
        """
        ...

    @abstractmethod
    async def remove(self, record_id: str, txn: Optional[TransactionHandle] = None) -> bool:
        """Delete by id; False if it did not exist."""
        ...

    @abstractmethod
    async def search(
        self, text: str, options: Optional[Dict[str, Any]] = None
    ) -> List[dict]:
        """Case-insensitive substring search over the entity's searchable fields."""
        ...


@runtime_checkable
class Backend(Protocol):
    """Protocol for persistence backends.

    Transaction contract:
        - begin() returns a pending handle
        - commit(handle) makes every write under the handle durable
        - rollback(handle) undoes them (or raises PartialRollbackError)
        - Both release the handle, on success and on failure
    """

    name: str

    @abstractmethod
    async def connect(self) -> None:
        """Open the connection pool and create tables. Idempotent."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the connection pool."""
        ...

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Cheap liveness probe."""
        ...

    @abstractmethod
    async def begin(self) -> TransactionHandle:
        ...

    @abstractmethod
    async def commit(self, txn: TransactionHandle) -> None:
        ...

    @abstractmethod
    async def rollback(self, txn: TransactionHandle) -> None:
        ...

    @abstractmethod
    def is_active(self, txn: TransactionHandle) -> bool:
        ...

    @abstractmethod
    def collection(self, entity: EntityDef) -> Collection:
        """Collection for an entity (cached per entity name)."""
        ...


class ConnectionGate:
    """Single in-flight connect shared by every caller.

    The first call triggers connect; concurrent callers await the same
    attempt. Failures are retried on the policy's schedule and then raise
    BackendUnavailableError. A failed gate can be awaited again later,
    which starts a fresh attempt.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        policy: RetryPolicy,
        provider: str,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._connect = connect
        self._policy = policy
        self._provider = provider
        self._sleep = sleep
        self._task: Optional[asyncio.Future] = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def wait(self) -> None:
        """Return once connected, connecting first if needed."""
        if self._connected:
            return
        if self._task is None:
            self._task = asyncio.ensure_future(self._connect_with_retry())
        task = self._task
        try:
            await asyncio.shield(task)
        except BackendUnavailableError:
            if self._task is task:
                self._task = None
            raise

    async def _connect_with_retry(self) -> None:
        attempt = 0
        while True:
            attempt += 1
            try:
                await self._connect()
            except Exception as exc:
                if not self._policy.should_retry(exc, attempt):
                    if isinstance(exc, BackendUnavailableError):
                        raise
                    raise BackendUnavailableError(
                        f"Could not connect to {self._provider}: {exc}", self._provider
                    ) from exc
                delay = self._policy.delay_for(attempt, random.random())
                logger.warning(
                    "Backend connect failed, retrying",
                    extra={
                        "provider": self._provider,
                        "attempt": attempt,
                        "max_attempts": self._policy.max_attempts,
                        "delay_s": delay,
                        "error": str(exc),
                    },
                )
                await self._sleep(delay)
            else:
                self._connected = True
                logger.info("Backend connected", extra={"provider": self._provider})
                return

    def reset(self) -> None:
        """Forget the connection (after close)."""
        self._connected = False
        self._task = None


def create_backend(config: AppConfig) -> Backend:
    """Factory function to create a backend from configuration.

    Raises:
        ConfigurationError: If the provider is not supported
    """
    from ..config import DatabaseProvider

    if config.db_provider == DatabaseProvider.DOCUMENT_STORE:
        from .documentstore import DocumentStoreBackend

        return DocumentStoreBackend(config.document_store)
    elif config.db_provider == DatabaseProvider.KEY_VALUE:
        from .keyvalue import KeyValueBackend

        return KeyValueBackend(config.key_value)
    elif config.db_provider == DatabaseProvider.OTHER_DOC:
        from .otherdoc import OtherDocBackend

        return OtherDocBackend(config.other_doc)
    raise ConfigurationError(f"Unsupported DB_PROVIDER: {config.db_provider}")
