"""Error kinds raised by the document store.

Every failure leaving the store is a `StoreError` carrying an `ErrorKind`.
Callers either branch on `err.kind` or wrap a call with `capture` and branch
on the returned `Outcome`.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Generic, Literal, TypeVar


T = TypeVar("T")


class ErrorKind(Enum):
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    QUERY_SYNTAX = "query_syntax"
    PERMANENT = "permanent"

    @property
    def retryable(self) -> bool:
        return self in (ErrorKind.TRANSIENT, ErrorKind.RATE_LIMITED)


class StoreError(Exception):
    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retry_after: float | None = None,
        retries_exhausted: bool = False,
        attempts: int = 1,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        # Suggested wait in seconds, only meaningful for RATE_LIMITED.
        self.retry_after = retry_after
        self.retries_exhausted = retries_exhausted
        self.attempts = attempts

    def __repr__(self) -> str:
        return (
            f"<StoreError(kind={self.kind.value}, message={self.message!r}, "
            f"attempts={self.attempts}, retries_exhausted={self.retries_exhausted})>"
        )

    @property
    def code(self) -> str:
        if self.retries_exhausted:
            return f"{self.kind.value}_retries_exhausted".upper()
        return self.kind.value.upper()

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class QuerySyntaxError(StoreError):
    def __init__(self, construct: str, message: str | None = None) -> None:
        super().__init__(
            ErrorKind.QUERY_SYNTAX,
            message or f"Unsupported query construct: {construct}",
        )
        self.construct = construct


def conflict(id: str, partition_key: str) -> StoreError:
    return StoreError(
        ErrorKind.CONFLICT,
        f"Document {id!r} already exists in partition {partition_key!r}.",
    )


def not_found(id: str, partition_key: str) -> StoreError:
    return StoreError(
        ErrorKind.NOT_FOUND,
        f"Document {id!r} not found in partition {partition_key!r}.",
    )


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Result of a store call, either a value or the error that ended it."""

    value: T | None = None
    error: StoreError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def kind(self) -> ErrorKind | Literal["ok"]:
        return "ok" if self.error is None else self.error.kind

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def capture(call: Awaitable[T]) -> Outcome[T]:
    try:
        value = await call
    except StoreError as e:
        return Outcome(error=e)
    return Outcome(value=value)
