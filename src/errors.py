"""
Operator Errors - Tagged error type shared by every layer.

Lower layers raise ``OperatorError`` with a kind describing how the caller
should react; the reconciler turns retryable kinds into a requeue and lets
fatal ones propagate to the controller.
"""

from enum import Enum
from typing import Iterable, Optional, Tuple


class ErrorKind(Enum):
    """Closed set of error kinds understood by the reconciler."""

    NOT_FOUND = "NotFound"
    NOT_YET_AVAILABLE = "NotYetAvailable"
    REMAINING_RESOURCES = "RemainingResources"
    FATAL = "Fatal"


class OperatorError(Exception):
    """
    Error raised by store clients, primitives and lifecycle operations.

    Attributes:
        kind: How the error should be handled.
        message: Human-readable description.
        requeue_after: Seconds to wait before retrying, if retryable.
        objects: Identities still pending deletion (REMAINING_RESOURCES only).
        cause: The underlying exception, if any.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        requeue_after: Optional[float] = None,
        objects: Iterable = (),
        cause: Optional[BaseException] = None,
    ):
        self.kind = kind
        self.message = message
        self.requeue_after = requeue_after
        self.objects: Tuple = tuple(objects)
        self.cause = cause
        super().__init__(message)

    @classmethod
    def not_found(cls, message: str) -> "OperatorError":
        return cls(ErrorKind.NOT_FOUND, message)

    @classmethod
    def not_yet_available(
        cls,
        message: str,
        requeue_after: Optional[float] = None,
        cause: Optional[BaseException] = None,
    ) -> "OperatorError":
        return cls(
            ErrorKind.NOT_YET_AVAILABLE,
            message,
            requeue_after=requeue_after,
            cause=cause,
        )

    @classmethod
    def remaining_resources(
        cls, objects: Iterable, requeue_after: float
    ) -> "OperatorError":
        objects = tuple(objects)
        ids = ", ".join(str(obj) for obj in objects)
        return cls(
            ErrorKind.REMAINING_RESOURCES,
            f"deletion of the following resources is still pending: [{ids}]",
            requeue_after=requeue_after,
            objects=objects,
        )

    @classmethod
    def fatal(
        cls, message: str, cause: Optional[BaseException] = None
    ) -> "OperatorError":
        return cls(ErrorKind.FATAL, message, cause=cause)

    @property
    def retryable(self) -> bool:
        """True if the caller should requeue after ``requeue_after`` seconds."""
        if self.kind == ErrorKind.REMAINING_RESOURCES:
            return True
        return self.kind == ErrorKind.NOT_YET_AVAILABLE and bool(self.requeue_after)

    def with_backoff(self, requeue_after: float) -> "OperatorError":
        """Return a copy of this error carrying the given backoff."""
        return OperatorError(
            self.kind,
            self.message,
            requeue_after=requeue_after,
            objects=self.objects,
            cause=self.cause if self.cause is not None else self,
        )

    def __repr__(self) -> str:
        return f"OperatorError({self.kind.value}, {self.message!r})"


def is_not_found(err: BaseException) -> bool:
    return isinstance(err, OperatorError) and err.kind == ErrorKind.NOT_FOUND


def is_not_yet_available(err: BaseException) -> bool:
    return isinstance(err, OperatorError) and err.kind == ErrorKind.NOT_YET_AVAILABLE


def is_remaining_resources(err: BaseException) -> bool:
    return (
        isinstance(err, OperatorError) and err.kind == ErrorKind.REMAINING_RESOURCES
    )
