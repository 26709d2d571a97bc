"""
Exception hierarchy for zsq.

ZsqError
├── ValidationError         — bad queue name, message id or numeric parameter
├── QueueNotFoundError      — queue metadata not present in the store
├── QueueExistsError        — queue already created by another caller
├── MessageTooLargeError    — body longer than the queue's maxsize
├── CASConflictError        — WATCH/MULTI retries exhausted
└── StoreError              — underlying store failure (wraps original exception)
    └── StoreConnectionError — store unreachable after one reconnect
"""

from __future__ import annotations


class ZsqError(Exception):
    """Base class for all zsq exceptions."""


class ValidationError(ZsqError):
    """
    Raised before any store access when an argument is malformed.

    Attributes
    ----------
    field : str
        Name of the offending argument ("queue", "id", "vt", ...).
    """

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(message)


class QueueNotFoundError(ZsqError):
    """Raised when an operation requires a queue that does not exist."""

    def __init__(self, queue: str) -> None:
        self.queue = queue
        super().__init__(f"Queue {queue!r} not found")


class QueueExistsError(ZsqError):
    """Raised by create_queue when the queue's fields are already set."""

    def __init__(self, queue: str) -> None:
        self.queue = queue
        super().__init__(f"Queue {queue!r} already exists")


class MessageTooLargeError(ZsqError):
    """Raised by send_message when the body exceeds the queue's maxsize."""

    def __init__(self, queue: str, size: int, maxsize: int) -> None:
        self.queue = queue
        self.size = size
        self.maxsize = maxsize
        super().__init__(
            f"Message of {size} characters exceeds maxsize {maxsize} of queue {queue!r}"
        )


class CASConflictError(ZsqError):
    """
    Raised when an optimistic WATCH/MULTI transaction keeps losing the race.

    Only the non-scripting Redis strategy raises this, and only after its
    retry budget is spent.
    """


class StoreError(ZsqError):
    """
    Wraps an underlying failure from a store adapter.

    Attributes
    ----------
    cause : Exception
        The original exception from the store backend.
    """

    def __init__(self, message: str, cause: Exception) -> None:
        self.cause = cause
        super().__init__(f"{message}: {cause}")


class StoreConnectionError(StoreError):
    """The store could not be reached, even after reconnecting once."""
