"""
Transaction coordinator.

Scoped acquisition of a transaction handle over whichever backend is
configured. The coordinator begins a handle, makes it the active handle of
the calling task, commits on normal exit and rolls back on any failure
(cancellation included).

Invariants:
    - Nested scopes join the active handle; only the outermost scope
      commits, rolls back or retries
    - The active handle is tracked in a ContextVar, so tasks started with
      asyncio.gather() inside a scope see the same handle
    - A handle is released (committed or rolled back) on every exit path,
      and its finish callbacks run after the release
    - Retries re-run the whole unit of work with a fresh handle

How to change safely:
    - Keep retry decisions in RetryPolicy; the loop here only consumes it
    - Never retry inside a joined scope
"""

from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, TypeVar

from .handles import TransactionHandle
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_active_handle: ContextVar[Optional[TransactionHandle]] = ContextVar(
    "inventory_core_active_transaction", default=None
)


@dataclass(frozen=True)
class TransactionOptions:
    """Per-call transaction options.

    Attributes:
        retry_policy: Policy for retrying the whole unit of work
            (None uses the coordinator default, which never retries)
        label: Name of the unit of work, for logs
    """

    retry_policy: Optional[RetryPolicy] = None
    label: str = ""


class TransactionCoordinator:
    """Runs units of work under one backend transaction.

    Example:
        >>> coordinator = TransactionCoordinator(backend)
        >>> async def work(txn):
        ...     return await items.update(item_id, {"quantity": 5}, txn=txn)
        >>> await coordinator.with_transaction(work)
    """

    def __init__(
        self,
        backend: Any,
        logging_enabled: bool = False,
        default_policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        """Initialize the coordinator.

        Args:
            backend: Object with begin/commit/rollback/is_active
            logging_enabled: Log begin/commit/rollback at debug level
            default_policy: Retry policy when a call passes none
            sleep: Awaitable sleep (injected in tests)
            rand: Uniform random source for jitter
        """
        self.backend = backend
        self.logging_enabled = logging_enabled
        self.default_policy = default_policy or RetryPolicy.never()
        self._sleep = sleep
        self._rand = rand

    def current(self) -> Optional[TransactionHandle]:
        """The calling task's active handle, if still pending."""
        handle = _active_handle.get()
        if handle is not None and handle.is_pending:
            return handle
        return None

    def _log(self, message: str, txn: TransactionHandle) -> None:
        if self.logging_enabled:
            logger.debug(
                message,
                extra={"txn_id": txn.id, "txn_kind": txn.kind, "txn_label": txn.label},
            )

    @asynccontextmanager
    async def transaction(
        self, options: Optional[TransactionOptions] = None
    ) -> AsyncIterator[TransactionHandle]:
        """Async-with form of a single attempt.

        Joins the active handle when there is one. This form never retries;
        use with_transaction() for retryable work.
        """
        active = self.current()
        if active is not None:
            yield active
            return

        txn = await self.backend.begin()
        txn.label = options.label if options else ""
        self._log("Transaction begin", txn)
        token = _active_handle.set(txn)
        try:
            try:
                yield txn
            except (Exception, asyncio.CancelledError):
                self._log("Transaction rollback", txn)
                await self.backend.rollback(txn)
                raise
            await self.backend.commit(txn)
            self._log("Transaction commit", txn)
        finally:
            _active_handle.reset(token)
            txn.run_finish_callbacks()

    async def with_transaction(
        self,
        fn: Callable[[TransactionHandle], Awaitable[T]],
        options: Optional[TransactionOptions] = None,
    ) -> T:
        """Run fn(txn) in a transaction and return its result.

        Nested calls join the active handle and run fn exactly once.
        The outermost call retries according to options.retry_policy.
        """
        active = self.current()
        if active is not None:
            return await fn(active)

        policy = (options.retry_policy if options else None) or self.default_policy
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.transaction(options) as txn:
                    return await fn(txn)
            except Exception as exc:
                if not policy.should_retry(exc, attempt):
                    raise
                delay = policy.delay_for(attempt, self._rand())
                logger.warning(
                    "Retrying transaction",
                    extra={
                        "attempt": attempt,
                        "delay_s": round(delay, 3),
                        "label": options.label if options else "",
                        "error": str(exc),
                    },
                )
                await self._sleep(delay)

    def is_active(self, txn: Optional[TransactionHandle]) -> bool:
        """Whether a handle is still usable for writes."""
        return txn is not None and self.backend.is_active(txn)
