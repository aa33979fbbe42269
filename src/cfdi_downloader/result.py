"""
Result track — Railway-Oriented Programming primitives for the download client.

A Result[T] is either Success(value) or Failure(FailureDescription). Adapters
raise typed exceptions internally and convert them to Result at their public
boundary; the pipeline then chains stages with flat_map so the first failure
short-circuits everything after it:

    acquire token ──Success──▶ submit request ──Success──▶ parse response
          │                         │                          │
          └──────── Failure ────────┴────────── Failure ───────┴──▶ Result[T]

Only the operators this project needs are implemented.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum, unique
from typing import Any, Generic, Protocol, TypeVar

import structlog

T = TypeVar("T")
U = TypeVar("U")

log = structlog.get_logger()


@unique
class ErrorCode(Enum):
    """
    Error codes for the failure track.

    Grouped as the client-side (bad input or credentials) and the
    server-side (SAT service or infrastructure) halves.
    """

    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Bad credential files, wrong passphrase, invalid date range, malformed XML."""

    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    """The SAT rejected the signed authentication envelope."""

    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """Unexpected local failure (corrupt package, programming error)."""

    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    """SOAP fault, malformed service response, exhausted transport retries."""

    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    """Every transport attempt ended in a timeout."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Anything that could not be classified."""


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor: error code, message, originating exception.

    >>> desc = FailureDescription(ErrorCode.VALIDATION_ERROR, "RFC is required")
    >>> desc.code
    <ErrorCode.VALIDATION_ERROR: 'VALIDATION_ERROR'>
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class Result(Generic[T]):
    """
    Success(value) or Failure(error).

        >>> Result.success(2).map(lambda x: x * 3).value()
        6
        >>> Result.failure(ErrorCode.VALIDATION_ERROR, "bad").map(lambda x: x).is_failure()
        True
    """

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def value(self) -> T:
        """Extract the success value. Raises ValueError on a Failure."""
        match self:
            case Success(v):
                return v
            case Failure(err):
                raise ValueError(f"Cannot get value from a Failure: {err.message}")
        raise TypeError("unreachable")  # pragma: no cover

    def error(self) -> FailureDescription:
        """Extract the failure description. Raises ValueError on a Success."""
        match self:
            case Failure(err):
                return err
            case Success(v):
                raise ValueError(f"Cannot get error from a Success: {v!r}")
        raise TypeError("unreachable")  # pragma: no cover

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        """Transform the success value. Short-circuits on failure."""
        match self:
            case Success(v):
                return Success(mapper(v))
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        """
        Chain a Result-returning stage. Short-circuits on failure.

        This is the operator that connects railway segments.
        """
        match self:
            case Success(v):
                return mapper(v)
            case Failure(err):
                return Failure(err)
        raise TypeError("unreachable")  # pragma: no cover

    def ensure(
        self,
        predicate: Callable[[T], bool],
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> Result[T]:
        """Keep the success value only if it satisfies the predicate."""
        return self.flat_map(
            lambda v: Result.success(v)
            if predicate(v)
            else Result.failure(code, message, exception)
        )

    def peek(self, action: Callable[[T], Any]) -> Result[T]:
        """Run a side effect (logging) on the success value."""
        match self:
            case Success(v):
                action(v)
        return self

    def peek_failure(self, action: Callable[[FailureDescription], Any]) -> Result[T]:
        """Run a side effect (logging) on the failure description."""
        match self:
            case Failure(err):
                action(err)
        return self

    @staticmethod
    def success(value: T) -> Result[T]:
        return Success(value)

    @staticmethod
    def failure(
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
    ) -> Result[T]:
        return Failure(FailureDescription(code=code, message=message, exception=exception))

    @staticmethod
    def from_computation(
        computation: Callable[[], T],
        error_code: ErrorCode,
        error_message: str,
    ) -> Result[T]:
        """
        Run a computation that may raise and capture the outcome.

        Exceptions that carry their own ``code`` attribute (the domain errors
        in ``cfdi_downloader.domain.errors``) keep that code; anything else is
        reported under ``error_code``. The exception text is appended to the
        message so the operator sees the underlying cause.
        """
        try:
            return Result.success(computation())
        except Exception as e:
            code = getattr(e, "code", None)
            if not isinstance(code, ErrorCode):
                code = error_code
            return Result.failure(code, f"{error_message}: {e}", e)

    @staticmethod
    def all_of(results: Iterable[Result[T]]) -> Result[list[T]]:
        """Collect Results into a Result of list; the first failure wins."""
        values: list[T] = []
        for r in results:
            match r:
                case Success(v):
                    values.append(v)
                case Failure(err):
                    return Failure(err)
        return Success(values)

    def __bool__(self) -> bool:
        return self.is_success()


@dataclass(frozen=True, slots=True)
class Success(Result[T]):
    """The success track."""

    _value: T

    def __init__(self, value: T) -> None:
        if value is None:
            raise TypeError("Success value must not be None")
        object.__setattr__(self, "_value", value)

    def __repr__(self) -> str:
        return f"Success({self._value!r})"


Success.__match_args__ = ("_value",)


@dataclass(frozen=True, slots=True)
class Failure(Result[T]):
    """The failure track."""

    _error: FailureDescription

    def __init__(self, error: FailureDescription) -> None:
        if error is None:
            raise TypeError("Failure error must not be None")
        object.__setattr__(self, "_error", error)

    def __repr__(self) -> str:
        return f"Failure({self._error.code.value}: {self._error.message!r})"


Failure.__match_args__ = ("_error",)


class ExecutionContext(Protocol):
    """Anything that can run a Result-returning computation."""

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]: ...


class LoggingExecutionContext:
    """
    Execution context that logs start, duration and outcome of an operation.

        ctx = LoggingExecutionContext(operation="VerifyRequest")
        result = ctx.execute(lambda: client.verify_request(request_id))
    """

    def __init__(self, operation: str) -> None:
        self._operation = operation

    def execute(self, computation: Callable[[], Result[T]]) -> Result[T]:
        log.info("operation.started", operation=self._operation)
        start = time.monotonic()
        try:
            result = computation()
        except Exception as e:
            log.error(
                "operation.crashed",
                operation=self._operation,
                elapsed_s=round(time.monotonic() - start, 3),
                error=str(e),
            )
            return Result.failure(ErrorCode.TECHNICAL_ERROR, f"Execution failed: {e}", e)

        elapsed = round(time.monotonic() - start, 3)
        if result.is_success():
            log.info("operation.completed", operation=self._operation, elapsed_s=elapsed)
        else:
            log.warning(
                "operation.failed",
                operation=self._operation,
                elapsed_s=elapsed,
                failure=str(result.error()),
            )
        return result
