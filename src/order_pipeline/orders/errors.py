"""Exceptions raised by the order store and executors."""

from __future__ import annotations


class OrderStoreError(RuntimeError):
    """Base class for order store failures."""


class StoreInitError(OrderStoreError):
    """Backing database could not be created or migrated."""


class StoreLockTimeoutError(OrderStoreError):
    """Exclusive store lock was not obtained within the configured wait.

    Transient: callers retry on the next poll cycle.
    """


class OrderNotFoundError(OrderStoreError):
    """Order or result id does not exist."""


class ExecutorError(RuntimeError):
    """Raised by executors when an attempt fails."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        super().__init__(message)
        self.transient = transient


class ExecutorTimeoutError(ExecutorError):
    """Executor did not return within the configured timeout."""


class OrderStateError(OrderStoreError):
    """Order is not in a status that allows the requested transition."""


class LeaseLostError(OrderStoreError):
    """Worker no longer holds the lease on the order it is processing."""
